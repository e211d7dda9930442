"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper. IdentityStore is the repository (and the
explicit connection handle every orchestrator call goes through); the _row_to_*
functions are the mappers. Nothing outside this module touches SQL.

Security:
  All queries use bound parameters. No f-strings in SQL.

Soft delete:
  Every table carries a nullable deleted_at. Every finder filters on
  deleted_at IS NULL; nothing is physically removed.

Uniqueness:
  UNIQUE(user_id, project_id) on project_authorizations makes "grant" an
  atomic insert-if-absent: a concurrent duplicate fails with IntegrityError,
  which record_project_authorization() reports as "not added".
  A partial unique index on users.email (live rows only) does the same for
  registration: soft-deleted users keep their old address, and a concurrent
  duplicate that slips past the pre-insert check fails with IntegrityError,
  which create_user() reports as ConflictError.

Failure policy:
  SQLAlchemy errors are logged and re-raised as StoreError with a generic
  message, so driver detail never reaches callers.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional, Union

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.tokens import burn_password_check, hash_password
from auth.tokens import verify_password as _check_password
from core.config import get_settings
from core.errors import ConflictError, NotFoundError, StoreError, ValidationError
from core.models import (
    USER_TYPES,
    Acl,
    AclAction,
    AclPermission,
    CompanyInfo,
    Module,
    PersonInfo,
    Project,
    ProjectAuthorization,
    User,
)

logger = logging.getLogger("idprovider.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_users = Table(
    "users",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(255), nullable=False),
    Column("hashed_password", Text, nullable=False),
    Column("type", String(16), nullable=False),
    Column("person_id", String(32)),
    Column("company_id", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("deleted_at", String(32)),
)

# Email is unique among live users only; tombstoned rows keep their address.
Index(
    "uq_users_live_email",
    _users.c.email,
    unique=True,
    sqlite_where=_users.c.deleted_at.is_(None),
    postgresql_where=_users.c.deleted_at.is_(None),
)

_authorizations = Table(
    "project_authorizations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(32), nullable=False),
    Column("project_id", String(32), nullable=False),
    Column("verified", Integer, nullable=False, server_default="0"),
    Column("acl_ref", String(64)),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("user_id", "project_id", name="uq_user_project"),
)

_people = Table(
    "people",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("tax_id", String(11), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("username", String(255), nullable=False, index=True),
    Column("birth_date", String(10), nullable=False),
    Column("mother", String(255)),
    Column("gender", String(30)),
    Column("country", String(2), nullable=False, server_default="br"),
    Column("created_at", String(32), nullable=False),
    Column("deleted_at", String(32)),
)

_companies = Table(
    "companies",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("tax_id", String(14), nullable=False, index=True),
    Column("username", String(255), nullable=False, index=True),
    Column("company_name", String(255), nullable=False),
    Column("fantasy_name", String(255)),
    Column("founded_at", String(10), nullable=False),
    Column("legal_nature", String(255)),
    Column("responsible", String(255)),
    Column("address", Text),  # JSON object serialized as text
    Column("country", String(2), nullable=False, server_default="br"),
    Column("created_at", String(32), nullable=False),
    Column("deleted_at", String(32)),
)

_projects = Table(
    "projects",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("site", String(2048), nullable=False),
    Column("secret", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("deleted_at", String(32)),
)

_modules = Table(
    "modules",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("project_id", String(32), nullable=False),
    Column("route", String(2048), nullable=False),
    Column("deleted_at", String(32)),
)

_acl_actions = Table(
    "acl_actions",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("name", String(16), nullable=False),
    Column("deleted_at", String(32)),
)

_acls = Table(
    "acls",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("project_id", String(32), nullable=False),
    Column("permissions", Text, nullable=False),  # JSON list of {module_id, actions}
    Column("created_at", String(32), nullable=False),
    Column("deleted_at", String(32)),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety (per connection)."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for users, their project authorizations, and the records they point at.

    Usage:
        store = IdentityStore("sqlite:///:memory:")
        person_id = store.create_person(PersonInfo(...))
        user_id = store.create_user(User(email="a@x.com", type="person", person_id=person_id), "pw123456")
        store.record_project_authorization(user_id, project_id, verified=True)
        store.close()
    """

    def __init__(self, db_url: Optional[str] = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        try:
            metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            logger.exception("Could not initialise identity store schema")
            raise StoreError("Identity store is unavailable") from e

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Scoped unit of work: commit on success, roll back and release on any error.

        IntegrityError is re-raised unchanged so callers can treat a unique
        constraint hit as a domain signal; every other SQLAlchemyError becomes
        StoreError.
        """
        try:
            with self.engine.begin() as conn:
                yield conn
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            logger.exception("Identity store operation failed")
            raise StoreError("Identity store is unavailable") from e

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def _load_user(self, conn: Connection, row) -> User:
        auth_rows = conn.execute(
            _authorizations.select().where(_authorizations.c.user_id == row.id).order_by(_authorizations.c.id)
        ).fetchall()
        user = _row_to_user(row)
        user.projects = {r.project_id: _row_to_authorization(r) for r in auth_rows}
        return user

    def find_by_id(self, user_id: str) -> Optional[User]:
        """Look up a non-deleted user by id. Returns None if absent."""
        with self.transaction() as conn:
            row = conn.execute(
                _users.select().where((_users.c.id == user_id) & _users.c.deleted_at.is_(None))
            ).fetchone()
            return self._load_user(conn, row) if row is not None else None

    def find_by_email(self, email: str) -> Optional[User]:
        """Look up a non-deleted user by exact email."""
        with self.transaction() as conn:
            row = conn.execute(
                _users.select().where((_users.c.email == email) & _users.c.deleted_at.is_(None))
            ).fetchone()
            return self._load_user(conn, row) if row is not None else None

    def _find_by_identity(self, person_ids: list[str], company_ids: list[str]) -> list[User]:
        if not person_ids and not company_ids:
            return []
        with self.transaction() as conn:
            rows = conn.execute(
                _users.select()
                .where(
                    or_(_users.c.person_id.in_(person_ids), _users.c.company_id.in_(company_ids))
                    & _users.c.deleted_at.is_(None)
                )
                .order_by(_users.c.created_at)
            ).fetchall()
            return [self._load_user(conn, r) for r in rows]

    def find_by_tax_id(self, tax_id: str) -> list[User]:
        """Return every non-deleted user whose person or company record has this tax ID.

        Several accounts may share one identity record, hence a list.
        """
        person_ids = [p.id for p in self._find_people(_people.c.tax_id == tax_id)]
        company_ids = [c.id for c in self._find_companies(_companies.c.tax_id == tax_id)]
        return self._find_by_identity(person_ids, company_ids)

    def find_by_username(self, username: str) -> list[User]:
        """Return every non-deleted user whose person or company record has this username."""
        person_ids = [p.id for p in self._find_people(_people.c.username == username)]
        company_ids = [c.id for c in self._find_companies(_companies.c.username == username)]
        return self._find_by_identity(person_ids, company_ids)

    def verify_password(self, user_id: str, plaintext: str) -> bool:
        """Compare plaintext against the stored bcrypt hash.

        Returns False (never raises) when the user does not exist or the
        password does not match. Runs bcrypt in both cases [C1].
        """
        with self.transaction() as conn:
            row = conn.execute(
                select(_users.c.hashed_password).where((_users.c.id == user_id) & _users.c.deleted_at.is_(None))
            ).fetchone()
        if row is None:
            burn_password_check(plaintext)
            return False
        return _check_password(plaintext, row.hashed_password)

    def _email_taken(self, conn: Connection, email: str) -> bool:
        row = conn.execute(
            select(_users.c.id).where((_users.c.email == email) & _users.c.deleted_at.is_(None))
        ).fetchone()
        return row is not None

    def create_user(
        self,
        user: User,
        password: str,
        identity: Union[PersonInfo, CompanyInfo, None] = None,
        username_prefix: Optional[str] = None,
    ) -> str:
        """Insert a new user with a freshly hashed password and return its id.

        identity, when given, is a new PersonInfo / CompanyInfo record that is
        inserted in the same transaction and linked to the user; user must then
        carry no identity reference of its own. username_prefix, if set, numbers
        the new record's username (see next_username). A failed user insert
        leaves no identity record behind.

        Raises ValidationError when type and identity reference disagree,
        ConflictError when the email is already bound to a non-deleted user.
        """
        if user.type not in USER_TYPES:
            raise ValidationError(f"Unknown user type: {user.type}")
        if identity is not None:
            if isinstance(identity, PersonInfo) != (user.type == "person") or user.person_id or user.company_id:
                raise ValidationError("User must reference exactly one identity record matching its type")
        else:
            expected_ref = user.person_id if user.type == "person" else user.company_id
            other_ref = user.company_id if user.type == "person" else user.person_id
            if not expected_ref or other_ref:
                raise ValidationError("User must reference exactly one identity record matching its type")
        user_id = _new_id()
        now = _now_iso()
        hashed = hash_password(password)
        try:
            with self.transaction() as conn:
                if self._email_taken(conn, user.email):
                    raise ConflictError("The email has already been registered")
                person_id, company_id = user.person_id, user.company_id
                if identity is not None:
                    if username_prefix:
                        identity = replace(identity, username=self._next_username(conn, username_prefix))
                    if isinstance(identity, PersonInfo):
                        person_id = self._insert_person(conn, identity)
                    else:
                        company_id = self._insert_company(conn, identity)
                conn.execute(
                    _users.insert().values(
                        id=user_id,
                        email=user.email,
                        hashed_password=hashed,
                        type=user.type,
                        person_id=person_id,
                        company_id=company_id,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError as e:
            # A concurrent registration committed the same email first.
            raise ConflictError("The email has already been registered") from e
        logger.info("Created user %s (%s)", user_id, user.type)
        return user_id

    def update_password(self, user_id: str, plaintext: str) -> None:
        """Replace the stored hash. Raises NotFoundError if the user is absent or deleted."""
        hashed = hash_password(plaintext)
        with self.transaction() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & _users.c.deleted_at.is_(None))
                .values(hashed_password=hashed, updated_at=_now_iso())
            )
        if result.rowcount == 0:
            raise NotFoundError("User not found")

    def soft_delete_user(self, user_id: str) -> bool:
        """Tombstone a user. Returns False if it was absent or already deleted."""
        with self.transaction() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & _users.c.deleted_at.is_(None))
                .values(deleted_at=_now_iso())
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Project authorizations
    # ------------------------------------------------------------------

    def record_project_authorization(
        self, user_id: str, project_id: str, verified: bool = False, acl_ref: Optional[str] = None
    ) -> bool:
        """Atomically add an authorization if none exists for (user, project).

        Returns True if a row was added, False if one was already there. An
        existing row is never modified here.
        """
        try:
            with self.transaction() as conn:
                conn.execute(
                    _authorizations.insert().values(
                        user_id=user_id,
                        project_id=project_id,
                        verified=1 if verified else 0,
                        acl_ref=acl_ref,
                        created_at=_now_iso(),
                    )
                )
                conn.execute(_users.update().where(_users.c.id == user_id).values(updated_at=_now_iso()))
        except IntegrityError:
            logger.info("Authorization for user %s on project %s already exists", user_id, project_id)
            return False
        return True

    def update_project_authorization(
        self,
        user_id: str,
        project_id: str,
        verified: Optional[bool] = None,
        acl_ref: Optional[str] = None,
    ) -> bool:
        """Administrative upgrade of an existing authorization.

        Only the fields passed as non-None change. Returns False if no
        authorization exists for (user, project).
        """
        values: dict = {}
        if verified is not None:
            values["verified"] = 1 if verified else 0
        if acl_ref is not None:
            values["acl_ref"] = acl_ref
        if not values:
            user = self.find_by_id(user_id)
            return user is not None and project_id in user.projects
        with self.transaction() as conn:
            result = conn.execute(
                _authorizations.update()
                .where((_authorizations.c.user_id == user_id) & (_authorizations.c.project_id == project_id))
                .values(**values)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # People and companies
    # ------------------------------------------------------------------

    def _find_people(self, condition) -> list[PersonInfo]:
        with self.transaction() as conn:
            rows = conn.execute(_people.select().where(condition & _people.c.deleted_at.is_(None))).fetchall()
        return [_row_to_person(r) for r in rows]

    def _find_companies(self, condition) -> list[CompanyInfo]:
        with self.transaction() as conn:
            rows = conn.execute(_companies.select().where(condition & _companies.c.deleted_at.is_(None))).fetchall()
        return [_row_to_company(r) for r in rows]

    def _insert_person(self, conn: Connection, person: PersonInfo) -> str:
        person_id = _new_id()
        conn.execute(
            _people.insert().values(
                id=person_id,
                tax_id=person.tax_id,
                name=person.name,
                username=person.username,
                birth_date=person.birth_date,
                mother=person.mother,
                gender=person.gender,
                country=person.country,
                created_at=_now_iso(),
            )
        )
        return person_id

    def create_person(self, person: PersonInfo) -> str:
        with self.transaction() as conn:
            return self._insert_person(conn, person)

    def find_person_by_tax_id(self, tax_id: str) -> Optional[PersonInfo]:
        people = self._find_people(_people.c.tax_id == tax_id)
        return people[0] if people else None

    def get_person(self, person_id: str) -> Optional[PersonInfo]:
        people = self._find_people(_people.c.id == person_id)
        return people[0] if people else None

    def _insert_company(self, conn: Connection, company: CompanyInfo) -> str:
        company_id = _new_id()
        conn.execute(
            _companies.insert().values(
                id=company_id,
                tax_id=company.tax_id,
                username=company.username,
                company_name=company.company_name,
                fantasy_name=company.fantasy_name,
                founded_at=company.founded_at,
                legal_nature=company.legal_nature,
                responsible=company.responsible,
                address=json.dumps(company.address),
                country=company.country,
                created_at=_now_iso(),
            )
        )
        return company_id

    def create_company(self, company: CompanyInfo) -> str:
        with self.transaction() as conn:
            return self._insert_company(conn, company)

    def find_company_by_tax_id(self, tax_id: str) -> Optional[CompanyInfo]:
        companies = self._find_companies(_companies.c.tax_id == tax_id)
        return companies[0] if companies else None

    def get_company(self, company_id: str) -> Optional[CompanyInfo]:
        companies = self._find_companies(_companies.c.id == company_id)
        return companies[0] if companies else None

    def _next_username(self, conn: Connection, prefix: str) -> str:
        people = conn.execute(
            select(func.count()).select_from(_people).where(_people.c.username.startswith(prefix, autoescape=True))
        ).scalar()
        companies = conn.execute(
            select(func.count())
            .select_from(_companies)
            .where(_companies.c.username.startswith(prefix, autoescape=True))
        ).scalar()
        return f"{prefix}{(people or 0) + (companies or 0)}"

    def next_username(self, prefix: str) -> str:
        """Return prefix + N, where N counts usernames already starting with prefix.

        People and companies share one username space because login by
        username searches both.
        """
        with self.transaction() as conn:
            return self._next_username(conn, prefix)

    # ------------------------------------------------------------------
    # Projects, modules, actions, ACLs (read mostly; created by admin tooling)
    # ------------------------------------------------------------------

    def create_project(self, project: Project) -> str:
        project_id = _new_id()
        with self.transaction() as conn:
            conn.execute(
                _projects.insert().values(
                    id=project_id,
                    name=project.name,
                    site=project.site,
                    secret=project.secret,
                    created_at=_now_iso(),
                )
            )
        return project_id

    def get_project(self, project_id: str) -> Optional[Project]:
        with self.transaction() as conn:
            row = conn.execute(
                _projects.select().where((_projects.c.id == project_id) & _projects.c.deleted_at.is_(None))
            ).fetchone()
        return _row_to_project(row) if row is not None else None

    def create_module(self, module: Module) -> str:
        module_id = _new_id()
        with self.transaction() as conn:
            conn.execute(
                _modules.insert().values(
                    id=module_id, name=module.name, project_id=module.project_id, route=module.route
                )
            )
        return module_id

    def get_modules(self, module_ids: list[str]) -> list[Module]:
        if not module_ids:
            return []
        with self.transaction() as conn:
            rows = conn.execute(
                _modules.select().where(_modules.c.id.in_(module_ids) & _modules.c.deleted_at.is_(None))
            ).fetchall()
        return [_row_to_module(r) for r in rows]

    def create_action(self, action: AclAction) -> str:
        action_id = _new_id()
        with self.transaction() as conn:
            conn.execute(_acl_actions.insert().values(id=action_id, name=action.name))
        return action_id

    def get_actions(self, action_ids: list[str]) -> list[AclAction]:
        if not action_ids:
            return []
        with self.transaction() as conn:
            rows = conn.execute(
                _acl_actions.select().where(_acl_actions.c.id.in_(action_ids) & _acl_actions.c.deleted_at.is_(None))
            ).fetchall()
        return [AclAction(id=r.id, name=r.name, deleted_at=r.deleted_at) for r in rows]

    def create_acl(self, acl: Acl) -> str:
        acl_id = _new_id()
        permissions = [{"module_id": p.module_id, "actions": list(p.actions)} for p in acl.permissions]
        with self.transaction() as conn:
            conn.execute(
                _acls.insert().values(
                    id=acl_id,
                    name=acl.name,
                    project_id=acl.project_id,
                    permissions=json.dumps(permissions),
                    created_at=_now_iso(),
                )
            )
        return acl_id

    def get_acl(self, acl_id: str) -> Optional[Acl]:
        with self.transaction() as conn:
            row = conn.execute(
                _acls.select().where((_acls.c.id == acl_id) & _acls.c.deleted_at.is_(None))
            ).fetchone()
        return _row_to_acl(row) if row is not None else None

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        type=row.type,
        person_id=row.person_id,
        company_id=row.company_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
        deleted_at=row.deleted_at,
    )


def _row_to_authorization(row) -> ProjectAuthorization:
    return ProjectAuthorization(project_id=row.project_id, verified=bool(row.verified), acl_ref=row.acl_ref)


def _row_to_person(row) -> PersonInfo:
    return PersonInfo(
        id=row.id,
        tax_id=row.tax_id,
        name=row.name,
        username=row.username,
        birth_date=row.birth_date,
        mother=row.mother or "",
        gender=row.gender or "",
        country=row.country,
        created_at=row.created_at,
        deleted_at=row.deleted_at,
    )


def _row_to_company(row) -> CompanyInfo:
    return CompanyInfo(
        id=row.id,
        tax_id=row.tax_id,
        username=row.username,
        company_name=row.company_name,
        fantasy_name=row.fantasy_name or "",
        founded_at=row.founded_at,
        legal_nature=row.legal_nature or "",
        responsible=row.responsible or "",
        address=json.loads(row.address) if row.address else {},
        country=row.country,
        created_at=row.created_at,
        deleted_at=row.deleted_at,
    )


def _row_to_project(row) -> Project:
    return Project(
        id=row.id,
        name=row.name,
        site=row.site,
        secret=row.secret,
        created_at=row.created_at,
        deleted_at=row.deleted_at,
    )


def _row_to_module(row) -> Module:
    return Module(id=row.id, name=row.name, project_id=row.project_id, route=row.route, deleted_at=row.deleted_at)


def _row_to_acl(row) -> Acl:
    permissions = [
        AclPermission(module_id=p["module_id"], actions=list(p.get("actions", []))) for p in json.loads(row.permissions)
    ]
    return Acl(
        id=row.id,
        name=row.name,
        project_id=row.project_id,
        permissions=permissions,
        created_at=row.created_at,
        deleted_at=row.deleted_at,
    )
