"""
auth/service.py -- The auth orchestrator.

Composes the tax-ID classifier, identity store, token service, authorization
registry and permission evaluator into the public flows:

  register -> login -> (authorize_project by an admin) -> middleware checks
  -> refresh_token -> ... ; generate_recovery_token -> change_password

Every public method returns an Envelope. IdentityError subclasses become
{code: 400, message: str(err)}; anything else is logged with its traceback
and reported with a generic message so no internal detail leaks.

Session lifecycle:
  Unauthenticated -> credentials verified -> no project authorization
  -> granted + verified -> token pair issued -> access token expires
  -> refresh -> new pair | refresh token expired -> Unauthenticated
"""

from __future__ import annotations

import functools
import logging
import re
import unicodedata
from dataclasses import asdict
from datetime import date, datetime
from typing import Any, Iterable, Optional, Union

from auth.envelope import Envelope, error, ok
from auth.permissions import find_role, is_allowed, parse_role_table, resolve_acl
from auth.registry import AuthorizationRegistry
from auth.store import IdentityStore
from auth.tokens import AccessClaims, RecoveryClaims, RefreshClaims, TokenService
from core.config import Settings, get_settings
from core.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    IdentityError,
    NotFoundError,
    ValidationError,
    check_params,
)
from core.fetcher import fetch_company, fetch_person
from core.models import CompanyInfo, Permission, PersonInfo, Role, User
from core.taxid import IdentifierKind, classify, is_email, is_valid_cnpj, is_valid_cpf, normalize_tax_id

logger = logging.getLogger("idprovider.auth")

_GENERIC_FAILURE = "Unexpected error. Please try again later."
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")


def _enveloped(func):
    """Map the wrapped flow's outcome onto the uniform envelope."""

    @functools.wraps(func)
    def wrapper(self, *args, **kwargs) -> Envelope:
        try:
            return func(self, *args, **kwargs)
        except IdentityError as e:
            logger.warning("%s failed: %s", func.__name__, e)
            return error(str(e))
        except Exception:
            logger.exception("%s failed unexpectedly", func.__name__)
            return error(_GENERIC_FAILURE)

    return wrapper


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _parse_date(value: Union[str, date], field_name: str) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    try:
        return date.fromisoformat(str(value).strip()[:10]).isoformat()
    except ValueError as e:
        raise ValidationError(f"Param '{field_name}' must be a date in YYYY-MM-DD format.") from e


def _username_prefix(name: str) -> str:
    """'Maria da Silva' -> 'mariasilva_'. Accents are folded to ASCII."""
    folded = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii").lower()
    parts = [_NON_ALNUM_RE.sub("", p) for p in folded.split()]
    parts = [p for p in parts if p]
    if not parts:
        return "user_"
    if len(parts) == 1:
        return f"{parts[0]}_"
    return f"{parts[0]}{parts[-1]}_"


def _as_roles(role_table: Iterable[Union[Role, dict]]) -> list[Role]:
    return [r if isinstance(r, Role) else parse_role_table([r])[0] for r in role_table]


class AuthService:
    """Identity provider flows over an explicit IdentityStore handle.

    Usage:
        service = AuthService(IdentityStore(db_url))
        result = service.login("a@x.com", "pw123456", project_id)
        if result.code == 200:
            access = result.data["token"]
    """

    def __init__(
        self,
        store: IdentityStore,
        settings: Optional[Settings] = None,
        tokens: Optional[TokenService] = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.tokens = tokens or TokenService()
        self.registry = AuthorizationRegistry(store)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    @_enveloped
    def register(
        self,
        tax_id: str,
        birth_date: Union[str, date],
        email: str,
        password: str,
        registry_endpoints: Optional[dict[str, str]] = None,
    ) -> Envelope:
        """Create a user bound to a person (CPF) or company (CNPJ) record.

        birth_date is the founding date for companies. Identity records not
        yet known locally are fetched from the configured registry. No token
        is issued; login is a separate step.
        """
        check_params(
            ["tax_id", "birth_date", "email", "password"],
            {"tax_id": tax_id, "birth_date": birth_date, "email": email, "password": password},
        )
        email = _normalize_email(email)
        if not is_email(email):
            raise ValidationError("Invalid email address")
        digits = normalize_tax_id(tax_id)
        if is_valid_cpf(digits):
            user_type = "person"
        elif is_valid_cnpj(digits):
            user_type = "company"
        else:
            raise ValidationError("Invalid tax ID")
        supplied_date = _parse_date(birth_date, "birth_date")

        if self.store.find_by_email(email) is not None:
            raise ConflictError("The email has already been registered")
        if self.store.find_by_tax_id(digits):
            raise ConflictError("The tax ID has already been registered")

        endpoints = registry_endpoints or self.settings.registry_endpoints
        if user_type == "person":
            user, identity, prefix = self._resolve_person(email, digits, supplied_date, endpoints.get("person", ""))
        else:
            user, identity, prefix = self._resolve_company(email, digits, supplied_date, endpoints.get("company", ""))

        # A new identity record is written in the same transaction as the user.
        user_id = self.store.create_user(user, password, identity=identity, username_prefix=prefix)
        logger.info("User %s successfully registered", user_id)
        return ok("User successfully registered", {"userId": user_id})

    def _resolve_person(
        self, email: str, cpf: str, birth_date: str, endpoint: str
    ) -> tuple[User, Optional[PersonInfo], Optional[str]]:
        """Return the user to create, plus a new PersonInfo and its username prefix when none is stored."""
        person = self.store.find_person_by_tax_id(cpf)
        if person is not None:
            if person.birth_date != birth_date:
                raise ValidationError("Birth date doesn't correspond to the tax ID")
            return User(email=email, type="person", person_id=person.id), None, None
        record = fetch_person(endpoint, cpf, timeout=self.settings.registry_timeout_seconds)
        if record["birth_date"] != birth_date:
            raise ValidationError("Birth date doesn't correspond to the tax ID")
        person = PersonInfo(
            tax_id=cpf,
            name=record["name"],
            username="",
            birth_date=record["birth_date"],
            mother=record["mother"],
            gender=record["gender"],
        )
        return User(email=email, type="person"), person, _username_prefix(record["name"])

    def _resolve_company(
        self, email: str, cnpj: str, founded_at: str, endpoint: str
    ) -> tuple[User, Optional[CompanyInfo], Optional[str]]:
        company = self.store.find_company_by_tax_id(cnpj)
        if company is not None:
            if company.founded_at != founded_at:
                raise ValidationError("Birth date doesn't correspond to the tax ID")
            return User(email=email, type="company", company_id=company.id), None, None
        record = fetch_company(endpoint, cnpj, timeout=self.settings.registry_timeout_seconds)
        if record["founded_at"] != founded_at:
            raise ValidationError("Birth date doesn't correspond to the tax ID")
        company = CompanyInfo(
            tax_id=cnpj,
            username="",
            company_name=record["company_name"],
            founded_at=record["founded_at"],
            fantasy_name=record["fantasy_name"],
            legal_nature=record["legal_nature"],
            responsible=record["responsible"],
            address=record["address"],
        )
        return User(email=email, type="company"), company, _username_prefix(record["company_name"])

    # ------------------------------------------------------------------
    # Login and tokens
    # ------------------------------------------------------------------

    def _candidates(self, identifier: str) -> list[User]:
        kind = classify(identifier)
        if kind is IdentifierKind.EMAIL:
            user = self.store.find_by_email(_normalize_email(identifier))
            return [user] if user is not None else []
        if kind in (IdentifierKind.PERSONAL_TAX_ID, IdentifierKind.ORGANIZATION_TAX_ID):
            return self.store.find_by_tax_id(normalize_tax_id(identifier))
        if kind is IdentifierKind.USERNAME:
            return self.store.find_by_username(identifier)
        raise ValidationError("Invalid user identifier")

    def _issue_pair(self, user_id: str, project_id: str, acl_id: Optional[str]) -> dict[str, str]:
        s = self.settings
        return {
            "token": self.tokens.issue(
                AccessClaims(sub=user_id, project_id=project_id, acl_id=acl_id),
                s.access_token_secret,
                s.access_token_ttl_seconds,
            ),
            "refreshToken": self.tokens.issue(
                RefreshClaims(sub=user_id, project_id=project_id, acl_id=acl_id),
                s.refresh_token_secret,
                s.refresh_token_ttl_seconds,
            ),
        }

    def _require_project(self, project_id: str):
        project = self.store.get_project(project_id)
        if project is None:
            raise NotFoundError("Project does not exist. Check your project Id")
        return project

    def _require_user(self, user_id: str) -> User:
        user = self.store.find_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    @_enveloped
    def login(self, identifier: str, password: str, project_id: str) -> Envelope:
        """Authenticate by email, CPF, CNPJ or username and issue a token pair.

        Tax-ID and username lookups may yield several accounts; the password
        is tried against each in creation order and the first match wins.
        """
        check_params(
            ["identifier", "password", "project_id"],
            {"identifier": identifier, "password": password, "project_id": project_id},
        )
        candidates = self._candidates(identifier)
        if not candidates:
            raise NotFoundError("User not found")
        user = next((u for u in candidates if self.store.verify_password(u.id, password)), None)
        if user is None:
            raise AuthenticationError("Incorrect password")

        authorization = self.registry.get_authorization(user, project_id)
        if authorization is None:
            raise AuthorizationError("Project does not have authorization")
        if not authorization.verified:
            raise AuthorizationError("User is not verified")
        project = self._require_project(project_id)

        data: dict[str, Any] = {"userId": user.id, **self._issue_pair(user.id, project_id, authorization.acl_ref)}
        data["site"] = project.site
        logger.info("User %s logged in to project %s", user.id, project_id)
        return ok("Successful login", data)

    @_enveloped
    def refresh_token(self, refresh_token: str, project_id: str) -> Envelope:
        """Exchange a valid refresh token for a fresh pair carrying the same ACL claim."""
        check_params(
            ["refresh_token", "project_id"], {"refresh_token": refresh_token, "project_id": project_id}
        )
        claims = self.tokens.decode(refresh_token, self.settings.refresh_token_secret, expected=RefreshClaims)
        if claims.project_id is not None and claims.project_id != project_id:
            raise AuthorizationError("Refresh token was not issued for this project")
        user = self._require_user(claims.sub)
        self._require_project(project_id)
        if self.registry.get_authorization(user, project_id) is None:
            raise AuthorizationError("Client is not authorized")
        return ok("User authenticated", self._issue_pair(user.id, project_id, claims.acl_id))

    @_enveloped
    def generate_recovery_token(self, email: str) -> Envelope:
        """Issue a short-lived password recovery token for the account bound to email."""
        check_params(["email"], {"email": email})
        user = self.store.find_by_email(_normalize_email(email))
        if user is None:
            raise NotFoundError("User not found")
        token = self.tokens.issue(
            RecoveryClaims(sub=user.id),
            self.settings.recovery_token_secret,
            self.settings.recovery_token_ttl_seconds,
        )
        return ok("Password recovery token successfully generated", {"recoveryPasswordToken": token})

    @_enveloped
    def change_password(self, recovery_token: str, new_password: str) -> Envelope:
        check_params(
            ["recovery_token", "new_password"], {"recovery_token": recovery_token, "new_password": new_password}
        )
        secret = self.settings.recovery_token_secret
        if not self.tokens.verify(recovery_token, secret, expected=RecoveryClaims):
            raise AuthenticationError("Invalid token")
        claims = self.tokens.decode(recovery_token, secret, expected=RecoveryClaims)
        self.store.update_password(claims.sub, new_password)
        logger.info("Password changed for user %s", claims.sub)
        return ok("Password updated successfully")

    # ------------------------------------------------------------------
    # Project authorization (administrative)
    # ------------------------------------------------------------------

    @_enveloped
    def authorize_project(
        self,
        user_id: str,
        project_id: str,
        verified: Optional[bool] = None,
        acl: Optional[str] = None,
    ) -> Envelope:
        """Link a user to a project. Re-authorizing an existing link is a no-op."""
        check_params(["user_id", "project_id"], {"user_id": user_id, "project_id": project_id})
        user = self._require_user(user_id)
        project = self._require_project(project_id)
        self.registry.grant(user, project_id, verified=bool(verified), acl_ref=acl)
        return ok("Project authorized", {"site": project.site})

    @_enveloped
    def update_authorization(
        self,
        user_id: str,
        project_id: str,
        verified: Optional[bool] = None,
        acl: Optional[str] = None,
    ) -> Envelope:
        """Change verified / ACL on an existing authorization."""
        check_params(["user_id", "project_id"], {"user_id": user_id, "project_id": project_id})
        user = self._require_user(user_id)
        self._require_project(project_id)
        user = self.registry.update(user, project_id, verified=verified, acl_ref=acl)
        authorization = user.projects[project_id]
        return ok("Authorization updated", asdict(authorization))

    # ------------------------------------------------------------------
    # Endpoint checks and user info
    # ------------------------------------------------------------------

    def _permissions_for(
        self, project_id: str, acl_ref: Optional[str], role_table: Optional[Iterable[Union[Role, dict]]]
    ) -> list[Permission]:
        if role_table is not None:
            role = find_role(_as_roles(role_table), acl_ref)
            if role is None:
                raise AuthorizationError("User is not authorized to access this endpoint")
            return role.permissions
        if acl_ref is None:
            raise AuthorizationError("User is not authorized to access this endpoint")
        acl = self.store.get_acl(acl_ref)
        if acl is None:
            raise NotFoundError("ACL not found")
        if acl.project_id != project_id:
            raise AuthorizationError("ACL does not belong to this project")
        modules = self.store.get_modules([p.module_id for p in acl.permissions])
        actions = self.store.get_actions([a for p in acl.permissions for a in p.actions])
        return resolve_acl(acl, modules, actions)

    @_enveloped
    def middleware(
        self,
        access_token: str,
        user_id: str,
        project_id: str,
        endpoint: str,
        method: str,
        role_table: Optional[Iterable[Union[Role, dict]]] = None,
    ) -> Envelope:
        """Decide whether user_id may call method on endpoint within project_id.

        With a role_table, the role whose group equals the authorization's
        acl_ref supplies the permissions; otherwise the stored ACL is resolved.
        """
        check_params(
            ["access_token", "user_id", "project_id", "endpoint", "method"],
            {
                "access_token": access_token,
                "user_id": user_id,
                "project_id": project_id,
                "endpoint": endpoint,
                "method": method,
            },
        )
        secret = self.settings.access_token_secret
        if not self.tokens.verify(access_token, secret, expected=AccessClaims):
            raise AuthenticationError("Access token invalid")
        claims = self.tokens.decode(access_token, secret, expected=AccessClaims)
        if claims.sub != user_id:
            raise AuthenticationError("Access token does not belong to this user")
        if claims.project_id is not None and claims.project_id != project_id:
            raise AuthorizationError("Access token was not issued for this project")

        user = self._require_user(user_id)
        authorization = self.registry.get_authorization(user, project_id)
        if authorization is None:
            raise AuthorizationError("User is not authorized")
        if not authorization.verified:
            raise AuthorizationError("User is not verified")

        permissions = self._permissions_for(project_id, authorization.acl_ref, role_table)
        if not is_allowed(permissions, endpoint, method):
            raise AuthorizationError("User is not authorized to access this endpoint")
        return ok("User is authorized to access this endpoint")

    @_enveloped
    def get_user_info(self, access_token: str, project_id: str) -> Envelope:
        """Return the token owner's account, identity record and authorization for project_id."""
        check_params(["access_token", "project_id"], {"access_token": access_token, "project_id": project_id})
        claims = self.tokens.decode(access_token, self.settings.access_token_secret, expected=AccessClaims)
        user = self._require_user(claims.sub)
        authorization = self.registry.get_authorization(user, project_id)
        if authorization is None:
            raise AuthorizationError("Project does not have authorization")
        data: dict[str, Any] = {
            "_id": user.id,
            "email": user.email,
            "type": user.type,
            "project": asdict(authorization),
        }
        if user.type == "person":
            person = self.store.get_person(user.person_id)
            data["personInfo"] = asdict(person) if person is not None else None
        else:
            company = self.store.get_company(user.company_id)
            data["companyInfo"] = asdict(company) if company is not None else None
        return ok("User info successfully returned", data)

    @_enveloped
    def delete_user(self, user_id: str) -> Envelope:
        """Soft-delete a user. The record stays, tombstoned with deleted_at."""
        check_params(["user_id"], {"user_id": user_id})
        if not self.store.soft_delete_user(user_id):
            raise NotFoundError("User not found")
        return ok("User deleted successfully")
