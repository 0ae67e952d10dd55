#!/usr/bin/env python3
"""
TenantGate -- administrative command line.

Bootstraps a deployment and performs the few operations that have no HTTP
route because nobody is signed in yet to call one.

Usage:
  python main.py init-db
  python main.py seed-roles [--force]
  python main.py create-company "Acme Inc" --max-seats 25 --mfa-required
  python main.py create-user alice@acme.test --company 1 --role admin
  python main.py create-internal-user ops@platform.test --company 1 --role platformAdmin
  python main.py register-client "Reporting App" --redirect-uri https://app.test/cb --public
  python main.py deactivate-client tg_client_abc123
  python main.py purge-sessions

Passwords are read from the TENANTGATE_PASSWORD environment variable or
prompted for; they are never accepted as command-line arguments.

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the auth database (default: sqlite:///tenantgate.db)
"""

import argparse
import getpass
import logging
import os
import sys
from typing import Optional

from auth.engine import AuthEngine, build_engine
from auth.errors import AuthError
from auth.models import Company, OAuthClientType, User, UserType
from auth.permissions import seed_system_roles
from auth.store import AuthStore
from core.config import get_settings


def _read_password(email: str) -> str:
    """Password from TENANTGATE_PASSWORD, else an interactive prompt (entered twice)."""
    env = os.environ.get("TENANTGATE_PASSWORD")
    if env:
        return env
    first = getpass.getpass(f"Password for {email}: ")
    if first != getpass.getpass("Repeat password: "):
        raise SystemExit("  [!] Passwords do not match.")
    return first


def _create_user(engine: AuthEngine, args: argparse.Namespace, user_type: UserType) -> User:
    email = args.email.strip().lower()
    if engine.store.get_user_by_email(email) is not None:
        raise SystemExit(f"  [!] A user with email {email} already exists.")
    if engine.store.get_company(args.company) is None:
        raise SystemExit(f"  [!] Company {args.company} does not exist.")
    password_hash = engine.credentials.prepare_password(
        _read_password(email), engine.credentials.policy_for(args.company)
    )
    user_id = engine.store.create_user(
        User(
            email=email,
            company_id=args.company,
            user_type=user_type,
            password_hash=password_hash,
            name_first=args.first_name,
            name_last=args.last_name,
            email_verified=True,
        )
    )
    return engine.store.get_user(user_id)


def _assign_named_role(engine: AuthEngine, user: User, role_name: Optional[str], company_id: Optional[int]) -> None:
    if not role_name:
        return
    role = engine.permissions.get_role_by_name(role_name, company_id)
    if role is None:
        raise SystemExit(f"  [!] No role named '{role_name}'.")
    engine.permissions.assign_role(user.id, role.id, company_id)
    print(f"  Assigned role {role.name}.")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_init_db(engine: AuthEngine, args: argparse.Namespace) -> None:
    seeded = seed_system_roles(engine.store)
    print(f"  Schema ready at {engine.store.db_url}; {seeded['created']} system role(s) created.")


def cmd_seed_roles(engine: AuthEngine, args: argparse.Namespace) -> None:
    seeded = seed_system_roles(engine.store, force=args.force)
    print(f"  {seeded['created']} created, {seeded['updated']} updated.")


def cmd_create_company(engine: AuthEngine, args: argparse.Namespace) -> None:
    company_id = engine.store.create_company(
        Company(
            name=args.name,
            max_seats=args.max_seats,
            max_sessions_per_user=args.max_sessions,
            mfa_required=args.mfa_required,
        )
    )
    print(f"  Company {company_id} created: {args.name}")


def cmd_create_user(engine: AuthEngine, args: argparse.Namespace) -> None:
    user = _create_user(engine, args, UserType.COMPANY)
    engine.access.add_membership(user.id, args.company, assign_defaults=not args.role)
    _assign_named_role(engine, user, args.role, args.company)
    print(f"  User {user.id} created: {user.email}")


def cmd_create_internal_user(engine: AuthEngine, args: argparse.Namespace) -> None:
    user = _create_user(engine, args, UserType.INTERNAL)
    _assign_named_role(engine, user, args.role, None)
    print(f"  Internal user {user.id} created: {user.email} (unrestricted until a company grant is added)")


def cmd_register_client(engine: AuthEngine, args: argparse.Namespace) -> None:
    registered = engine.oauth.register_client(
        args.name,
        client_type=OAuthClientType.PUBLIC if args.public else OAuthClientType.CONFIDENTIAL,
        redirect_uris=args.redirect_uri,
        allowed_scopes=args.scope or None,
        require_pkce=not args.no_pkce,
    )
    print(f"  client_id:     {registered.client.client_id}")
    if registered.client_secret:
        print(f"  client_secret: {registered.client_secret}")
        print("  Store the secret now; it cannot be shown again.")


def cmd_deactivate_client(engine: AuthEngine, args: argparse.Namespace) -> None:
    engine.oauth.deactivate_client(args.client_id)
    print(f"  Client {args.client_id} deactivated.")


def cmd_purge_sessions(engine: AuthEngine, args: argparse.Namespace) -> None:
    print(f"  {engine.sessions.purge_expired()} expired session(s) deleted.")


def _add_user_arguments(sub: argparse.ArgumentParser) -> None:
    sub.add_argument("email")
    sub.add_argument("--company", type=int, required=True, metavar="ID", help="Home company id")
    sub.add_argument("--first-name", default="")
    sub.add_argument("--last-name", default="")
    sub.add_argument("--role", metavar="NAME", help="Role to assign (default roles apply when omitted)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tenantgate",
        description="Administer a TenantGate authentication database.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--database-url", metavar="URL", help="Override DATABASE_URL")
    commands = parser.add_subparsers(dest="command", required=True)

    sub = commands.add_parser("init-db", help="Create the schema and seed system roles")
    sub.set_defaults(func=cmd_init_db)

    sub = commands.add_parser("seed-roles", help="Insert missing SYSTEM and PLATFORM roles")
    sub.add_argument("--force", action="store_true", help="Rewrite permissions of existing built-in roles")
    sub.set_defaults(func=cmd_seed_roles)

    sub = commands.add_parser("create-company", help="Create a tenant")
    sub.add_argument("name")
    sub.add_argument("--max-seats", type=int, default=None)
    sub.add_argument("--max-sessions", type=int, default=None, help="Concurrent sessions per user")
    sub.add_argument("--mfa-required", action="store_true")
    sub.set_defaults(func=cmd_create_company)

    sub = commands.add_parser("create-user", help="Create a company user with an active membership")
    _add_user_arguments(sub)
    sub.set_defaults(func=cmd_create_user)

    sub = commands.add_parser("create-internal-user", help="Create a platform staff account")
    _add_user_arguments(sub)
    sub.set_defaults(func=cmd_create_internal_user)

    sub = commands.add_parser("register-client", help="Register an OAuth client application")
    sub.add_argument("name")
    sub.add_argument("--redirect-uri", action="append", required=True, metavar="URI")
    sub.add_argument("--scope", action="append", metavar="SCOPE")
    sub.add_argument("--public", action="store_true", help="Public client (no secret, PKCE enforced)")
    sub.add_argument("--no-pkce", action="store_true", help="Do not require PKCE for a confidential client")
    sub.set_defaults(func=cmd_register_client)

    sub = commands.add_parser("deactivate-client", help="Stop an OAuth client from obtaining tokens")
    sub.add_argument("client_id")
    sub.set_defaults(func=cmd_deactivate_client)

    sub = commands.add_parser("purge-sessions", help="Delete long-expired session rows")
    sub.set_defaults(func=cmd_purge_sessions)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")
    store = AuthStore(args.database_url or get_settings().database_url)
    try:
        args.func(build_engine(store), args)
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        for key, value in exc.details.items():
            print(f"      {key}: {value}")
        return 1
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
