#!/usr/bin/env python3
"""
authcore -- administration CLI.

Provisioning and maintenance tasks that run outside the HTTP server, against
the same database the server uses (DATABASE_URL).

Usage:
  python main.py create-principal ops@example.com --role operator --password 's3cret!'
  python main.py create-principal owner@example.com --role admin --otp-only
  python main.py set-permissions client_user admissions.view admissions.create
  python main.py show-permissions client_user
  python main.py export-audit --since 2026-01-01T00:00:00+00:00 --output audit.csv
  python main.py purge
  python main.py serve --port 8000

Environment variables:
  SECRET_KEY    Required unless DEBUG=true. Keys the OTP and session hashes.
  DATABASE_URL  SQLAlchemy URL. Defaults to a SQLite file beside the package.
"""

import argparse
import getpass
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.errors import UnknownPermission
from auth.facade import AuthFacade, build_auth_facade
from auth.models import AuditAction, AuditFilter
from auth.permissions import SUPERUSER_ROLE
from core.config import get_settings


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        raise argparse.ArgumentTypeError(f"'{value}' has no timezone offset (e.g. +00:00).")
    return moment


def _cmd_create_principal(facade: AuthFacade, args: argparse.Namespace) -> int:
    password: Optional[str] = None
    if not args.otp_only:
        password = args.password or getpass.getpass("Password: ")
    try:
        principal_id = facade.credentials.create_principal(
            args.identifier, role=args.role, password=password, tenant_id=args.tenant
        )
    except IntegrityError:
        print(f"  [!] A principal with identifier '{args.identifier}' already exists.")
        return 1
    print(f"  Created principal {principal_id} ({args.identifier.strip().lower()}, role={args.role}).")
    return 0


def _cmd_set_permissions(facade: AuthFacade, args: argparse.Namespace) -> int:
    if args.role == SUPERUSER_ROLE:
        print(f"  [!] '{SUPERUSER_ROLE}' holds every permission; grants for it are ignored.")
    try:
        granted = facade.permissions.set_permissions(args.role, args.codes)
    except UnknownPermission as exc:
        print(f"  [!] {exc}. Nothing was changed.")
        return 1
    print(f"  Role '{args.role}' now holds {len(granted)} permission(s).")
    return 0


def _cmd_show_permissions(facade: AuthFacade, args: argparse.Namespace) -> int:
    roles = [args.role] if args.role else facade.permissions.roles()
    for role in roles:
        codes = sorted(p.value for p in facade.permissions.permissions_for(role))
        print(f"{role}: {', '.join(codes) if codes else '(none)'}")
    return 0


def _cmd_export_audit(facade: AuthFacade, args: argparse.Namespace) -> int:
    criteria = AuditFilter(
        action=AuditAction(args.action) if args.action else None,
        actor_identifier=args.actor,
        since=_parse_timestamp(args.since),
        until=_parse_timestamp(args.until),
        ascending=True,
    )
    content = facade.audit_log.export_csv(criteria)
    if args.output:
        Path(args.output).write_text(content, encoding="utf-8")
        print(f"  Audit export written to {args.output}.")
    else:
        sys.stdout.write(content)
    return 0


def _cmd_purge(facade: AuthFacade, args: argparse.Namespace) -> int:
    sessions, tokens = facade.purge_expired(get_settings().otp_retention_seconds)
    print(f"  Purged {sessions} expired session(s) and {tokens} old OTP token(s).")
    return 0


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("asgi:app", host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="authcore",
        description="authcore administration: principals, role permissions, audit export.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-principal", help="Create a login principal.")
    create.add_argument("identifier", help="Contact address used to log in (e-mail).")
    create.add_argument("--role", required=True, help="Role name, e.g. admin, operator, client_user.")
    create.add_argument("--password", help="Initial password (prompted if omitted).")
    create.add_argument("--otp-only", action="store_true", help="No password; log in by one-time code only.")
    create.add_argument("--tenant", help="Active tenant id for the principal.")

    grant = sub.add_parser("set-permissions", help="Replace a role's permission set.")
    grant.add_argument("role")
    grant.add_argument("codes", nargs="*", help="Permission codes (empty clears the role).")

    show = sub.add_parser("show-permissions", help="List grants of one role or of every role.")
    show.add_argument("role", nargs="?")

    export = sub.add_parser("export-audit", help="Export the audit trail as CSV.")
    export.add_argument("--action", choices=[a.value for a in AuditAction])
    export.add_argument("--actor", help="Filter by actor identifier.")
    export.add_argument("--since", help="ISO-8601 lower bound, inclusive (with offset).")
    export.add_argument("--until", help="ISO-8601 upper bound, exclusive (with offset).")
    export.add_argument("--output", "-o", help="Write to this file instead of stdout.")

    sub.add_parser("purge", help="Delete expired sessions and old OTP tokens.")

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    return parser


_COMMANDS = {
    "create-principal": _cmd_create_principal,
    "set-permissions": _cmd_set_permissions,
    "show-permissions": _cmd_show_permissions,
    "export-audit": _cmd_export_audit,
    "purge": _cmd_purge,
}


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "serve":
        return _cmd_serve(args)
    try:
        _parse_timestamp(getattr(args, "since", None))
        _parse_timestamp(getattr(args, "until", None))
    except (ValueError, argparse.ArgumentTypeError) as exc:
        parser.error(str(exc))
    facade = build_auth_facade(get_settings())
    return _COMMANDS[args.command](facade, args)


if __name__ == "__main__":
    sys.exit(main())
