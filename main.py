#!/usr/bin/env python3
"""
ClinicConnect auth -- operator command line.

Talks to the configured databases directly (DATABASE_URL and
SESSION_DATABASE_URL); the API server does not need to be running.

Usage:
  python main.py create-user alice --role nurse --organization 3
  python main.py add-membership 7 12 --default
  python main.py seed-demo
  python main.py purge-sessions
  python main.py audit-tail --limit 50 --organization 3
"""

import argparse
import getpass
import json
import sys

from sqlalchemy.exc import IntegrityError

from auth.audit import AuditLogger
from auth.models import User
from auth.roles import Role
from auth.sessions import SqlSessionStore
from auth.store import UserStore
from auth.tokens import hash_password, password_problem
from core.config import get_settings

# Demo account for local development: the super admin "ade".
_DEMO_USERNAME = "ade"
_DEMO_PASSWORD = "admin123"


def _read_password(supplied: str | None) -> str:
    if supplied:
        return supplied
    first = getpass.getpass("Password: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        raise SystemExit("  [!] Passwords do not match.")
    return first


def cmd_create_user(args: argparse.Namespace) -> int:
    try:
        role = Role.parse(args.role)
    except ValueError:
        print(f"  [!] Unknown role '{args.role}'. Expected one of: {', '.join(r.value for r in Role)}")
        return 2
    password = _read_password(args.password)
    problem = password_problem(password)
    if problem:
        print(f"  [!] {problem}")
        return 2

    store = UserStore(get_settings().database_url)
    try:
        user_id = store.create_user(
            User(
                username=args.username,
                role=role,
                organization_id=args.organization,
                hashed_password=hash_password(password),
            )
        )
    except IntegrityError:
        print(f"  [!] A user named '{args.username}' already exists.")
        return 1
    finally:
        store.close()
    print(f"  Created user '{args.username}' (id={user_id}, role={role.value}).")
    return 0


def cmd_add_membership(args: argparse.Namespace) -> int:
    store = UserStore(get_settings().database_url)
    try:
        if store.get_by_id(args.user_id) is None:
            print(f"  [!] No user with id {args.user_id}.")
            return 1
        try:
            store.add_membership(args.user_id, args.organization_id, is_default=args.default)
        except IntegrityError:
            print(f"  [!] User {args.user_id} is already a member of organization {args.organization_id}.")
            return 1
    finally:
        store.close()
    print(f"  User {args.user_id} added to organization {args.organization_id}.")
    return 0


def cmd_seed_demo(args: argparse.Namespace) -> int:
    settings = get_settings()
    if not settings.debug and not args.force:
        print("  [!] Refusing to seed a demo account outside DEBUG mode (use --force).")
        return 2
    store = UserStore(settings.database_url)
    try:
        if store.get_by_username(_DEMO_USERNAME) is not None:
            print(f"  Demo user '{_DEMO_USERNAME}' already exists.")
            return 0
        store.create_user(
            User(
                username=_DEMO_USERNAME,
                role=Role.SUPER_ADMIN,
                hashed_password=hash_password(_DEMO_PASSWORD),
            )
        )
    finally:
        store.close()
    print(f"  Seeded super admin '{_DEMO_USERNAME}' / '{_DEMO_PASSWORD}'. Change the password before sharing.")
    return 0


def cmd_purge_sessions(args: argparse.Namespace) -> int:
    store = SqlSessionStore(get_settings().effective_session_database_url)
    try:
        removed = store.purge_expired()
    finally:
        store.close()
    print(f"  Purged {removed} expired session(s).")
    return 0


def cmd_audit_tail(args: argparse.Namespace) -> int:
    audit = AuditLogger(get_settings().database_url)
    entries = audit.list_entries(
        organization_id=args.organization,
        actor_user_id=args.actor,
        action=args.action,
        limit=args.limit,
    )
    for entry in reversed(entries):
        if args.json:
            print(
                json.dumps(
                    {
                        "id": entry.id,
                        "timestamp": entry.timestamp.isoformat(),
                        "action": entry.action,
                        "actor_user_id": entry.actor_user_id,
                        "entity": f"{entry.entity_type}:{entry.entity_id}",
                        "organization_id": entry.organization_id,
                        "ip_address": entry.ip_address,
                        "details": entry.details,
                    }
                )
            )
        else:
            actor = entry.actor_user_id if entry.actor_user_id is not None else "-"
            print(
                f"{entry.timestamp.isoformat()}  {entry.action:<30} actor={actor} "
                f"{entry.entity_type}:{entry.entity_id or '-'} org={entry.organization_id or '-'}"
            )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="clinicconnect-auth",
        description="Operator commands for the ClinicConnect auth service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user alice --role nurse --organization 3
  python main.py create-user root --role super_admin
  python main.py add-membership 7 12 --default
  DEBUG=true python main.py seed-demo
  python main.py audit-tail --action LOGIN_FAILED --limit 20
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("create-user", help="Create a local account")
    p.add_argument("username")
    p.add_argument("--role", required=True, help="Role name (e.g. nurse, admin, super_admin)")
    p.add_argument("--organization", type=int, default=None, metavar="ID", help="Home organization id")
    p.add_argument("--password", default=None, help="Password (prompted for when omitted)")
    p.set_defaults(func=cmd_create_user)

    p = sub.add_parser("add-membership", help="Grant a user access to another organization")
    p.add_argument("user_id", type=int)
    p.add_argument("organization_id", type=int)
    p.add_argument("--default", action="store_true", help="Start logins in this organization")
    p.set_defaults(func=cmd_add_membership)

    p = sub.add_parser("seed-demo", help="Create the development super admin account")
    p.add_argument("--force", action="store_true", help="Seed even when DEBUG is off")
    p.set_defaults(func=cmd_seed_demo)

    p = sub.add_parser("purge-sessions", help="Delete sessions past their sliding expiry")
    p.set_defaults(func=cmd_purge_sessions)

    p = sub.add_parser("audit-tail", help="Print recent audit entries, oldest first")
    p.add_argument("--limit", type=int, default=50)
    p.add_argument("--organization", type=int, default=None, metavar="ID")
    p.add_argument("--actor", type=int, default=None, metavar="USER_ID")
    p.add_argument("--action", default=None)
    p.add_argument("--json", action="store_true", help="One JSON object per line")
    p.set_defaults(func=cmd_audit_tail)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
