#!/usr/bin/env python3
"""
idprovider -- Command-line front end for the identity provider flows.

Usage:
  python main.py create-project --name Portal --site https://portal.example.com
  python main.py register --tax-id 111.444.777-35 --birth-date 1990-05-17 --email a@x.com --password pw123456
  python main.py authorize --user-id <id> --project-id <id> --verified --acl <acl-id>
  python main.py login --identifier a@x.com --password pw123456 --project-id <id>
  python main.py refresh --refresh-token <token> --project-id <id>
  python main.py check --token <token> --user-id <id> --project-id <id> --endpoint /users/42 --method GET
  python main.py recovery-token --email a@x.com
  python main.py change-password --recovery-token <token> --password new-secret

Every command prints the {code, message, data} envelope as JSON and exits
with status 1 when code is not 200.

Environment variables (see core/config.py):
  DATABASE_URL, ACCESS_TOKEN_SECRET, REFRESH_TOKEN_SECRET, RECOVERY_TOKEN_SECRET,
  PERSON_REGISTRY_URL, COMPANY_REGISTRY_URL, DEBUG
"""

import argparse
import json
import logging
import secrets
import sys
from typing import Optional

from auth.envelope import Envelope, error, ok
from auth.service import AuthService
from auth.store import IdentityStore
from core.config import get_settings
from core.errors import IdentityError, ValidationError
from core.models import Project

logger = logging.getLogger("idprovider.cli")


def _load_role_table(path: Optional[str]) -> Optional[list]:
    """Read a JSON role table: [{"group": ..., "permissions": [{"resource", "methods"}]}]."""
    if not path:
        return None
    try:
        with open(path, encoding="utf-8") as fh:
            return json.load(fh)
    except (OSError, ValueError) as e:
        raise ValidationError(f"Role table could not be read: {path}") from e


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="idprovider",
        description="Register, authenticate and authorize users against client projects.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--database-url", metavar="URL", help="Override DATABASE_URL for this run")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("create-project", help="Create a client project")
    p.add_argument("--name", required=True)
    p.add_argument("--site", required=True, help="Site URL returned on login")
    p.add_argument("--secret", help="Client secret (generated when omitted)")

    p = sub.add_parser("register", help="Register a person (CPF) or company (CNPJ)")
    p.add_argument("--tax-id", required=True)
    p.add_argument("--birth-date", required=True, help="YYYY-MM-DD; founding date for companies")
    p.add_argument("--email", required=True)
    p.add_argument("--password", required=True)

    p = sub.add_parser("login", help="Log in and obtain a token pair")
    p.add_argument("--identifier", required=True, help="Email, CPF, CNPJ or username")
    p.add_argument("--password", required=True)
    p.add_argument("--project-id", required=True)

    p = sub.add_parser("authorize", help="Authorize a user for a project (admin)")
    p.add_argument("--user-id", required=True)
    p.add_argument("--project-id", required=True)
    p.add_argument("--verified", action="store_true")
    p.add_argument("--acl", help="ACL id or role-table group")
    p.add_argument("--update", action="store_true", help="Upgrade an existing authorization instead")

    p = sub.add_parser("refresh", help="Exchange a refresh token for a new pair")
    p.add_argument("--refresh-token", required=True)
    p.add_argument("--project-id", required=True)

    p = sub.add_parser("check", help="Check endpoint access for a user")
    p.add_argument("--token", required=True, help="Access token")
    p.add_argument("--user-id", required=True)
    p.add_argument("--project-id", required=True)
    p.add_argument("--endpoint", required=True)
    p.add_argument("--method", required=True)
    p.add_argument("--roles", metavar="PATH", help="JSON role table (stored ACLs are used when omitted)")

    p = sub.add_parser("recovery-token", help="Issue a password recovery token")
    p.add_argument("--email", required=True)

    p = sub.add_parser("change-password", help="Change password with a recovery token")
    p.add_argument("--recovery-token", required=True)
    p.add_argument("--password", required=True)
    return parser


def _dispatch(service: AuthService, args: argparse.Namespace) -> Envelope:
    if args.command == "create-project":
        project_id = service.store.create_project(
            Project(name=args.name, site=args.site, secret=args.secret or secrets.token_hex(32))
        )
        return ok("Project created", {"projectId": project_id})
    if args.command == "register":
        return service.register(args.tax_id, args.birth_date, args.email, args.password)
    if args.command == "login":
        return service.login(args.identifier, args.password, args.project_id)
    if args.command == "authorize":
        if args.update:
            return service.update_authorization(
                args.user_id, args.project_id, verified=args.verified or None, acl=args.acl
            )
        return service.authorize_project(args.user_id, args.project_id, verified=args.verified, acl=args.acl)
    if args.command == "refresh":
        return service.refresh_token(args.refresh_token, args.project_id)
    if args.command == "check":
        return service.middleware(
            args.token,
            args.user_id,
            args.project_id,
            args.endpoint,
            args.method,
            role_table=_load_role_table(args.roles),
        )
    if args.command == "recovery-token":
        return service.generate_recovery_token(args.email)
    return service.change_password(args.recovery_token, args.password)


def main(argv: Optional[list[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )

    try:
        store = IdentityStore(args.database_url or get_settings().database_url)
    except IdentityError as e:
        result = error(str(e))
    else:
        try:
            result = _dispatch(AuthService(store), args)
        except IdentityError as e:
            result = error(str(e))
        finally:
            store.close()

    print(json.dumps(result.model_dump(), indent=2))
    return 0 if result.code == 200 else 1


if __name__ == "__main__":
    sys.exit(main())
