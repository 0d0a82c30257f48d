#!/usr/bin/env python3
"""
sanctum -- operator CLI for the Credential & Session Authority.

There is no HTTP self-registration; accounts are provisioned here.

Usage:
  python main.py seed
  python main.py seed --admin-password 'S3cure-admin' --pastor-password 'S3cure-pastor'
  python main.py create-user alice --role user --permission manage_videos
  python main.py deactivate alice
  python main.py prune-audit
  python main.py prune-audit --keep 500
  python main.py events --limit 20 --username admin --kind login_failure

Environment variables:
  DATABASE_URL   SQLAlchemy URL of the credential store (default: sanctum_auth.db
                 next to the package; memory:// is useless here, state is lost on exit).
  SECRET_KEY / REFRESH_SECRET_KEY   Required unless DEBUG=true.
"""

from __future__ import annotations

import argparse
import getpass
import logging
import secrets
import string
import sys
from typing import Optional

from auth.authority import DEFAULT_USERS, Authority
from auth.errors import DuplicateUsername
from auth.models import EventKind, Role
from auth.passwords import password_policy_violations
from core.config import get_settings

logger = logging.getLogger("sanctum.cli")

_ALPHABET = string.ascii_letters + string.digits


def _generate_password(min_length: int) -> str:
    """Random password that satisfies the new-password policy."""
    length = max(16, min_length)
    while True:
        candidate = "".join(secrets.choice(_ALPHABET) for _ in range(length))
        if not password_policy_violations(candidate, min_length):
            return candidate


def _non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must be 0 or greater, got {number}")
    return number


def _check_password(password: str, min_length: int) -> Optional[str]:
    problems = password_policy_violations(password, min_length)
    if problems:
        return "Password " + "; ".join(problems) + "."
    return None


# ---------------------------------------------------------------------------
# Sub-commands
# ---------------------------------------------------------------------------


def cmd_seed(authority: Authority, args: argparse.Namespace) -> int:
    min_length = authority.settings.new_password_min_length
    supplied = {"admin": args.admin_password, "pastor": args.pastor_password}
    passwords: dict[str, str] = {}
    for username, _role, _permissions in DEFAULT_USERS:
        password = supplied.get(username) or _generate_password(min_length)
        problem = _check_password(password, min_length)
        if problem:
            print(f"  [!] {username}: {problem}")
            return 2
        passwords[username] = password

    created = authority.seed_defaults(passwords)
    if not created:
        print("  Credential store already has users; nothing seeded.")
        return 0
    for user in created:
        print(f"  Created {user.username} (role={user.role}, permissions={','.join(sorted(user.permissions))})")
        if not supplied.get(user.username):
            print(f"    initial password: {passwords[user.username]}  (shown once -- change it after first login)")
    return 0


def cmd_create_user(authority: Authority, args: argparse.Namespace) -> int:
    min_length = authority.settings.new_password_min_length
    password = args.password or getpass.getpass(f"Password for {args.username}: ")
    problem = _check_password(password, min_length)
    if problem:
        print(f"  [!] {problem}")
        return 2
    if len(args.username) < authority.settings.username_min_length:
        print(f"  [!] Username must be at least {authority.settings.username_min_length} characters.")
        return 2
    try:
        user = authority.provision_user(args.username, password, args.role, set(args.permission or []))
    except DuplicateUsername:
        print(f"  [!] Username '{args.username}' is already taken.")
        return 1
    print(f"  Created {user.username} (id={user.id}, role={user.role})")
    return 0


def cmd_deactivate(authority: Authority, args: argparse.Namespace) -> int:
    user = authority.store.get_by_username(args.username)
    if user is None:
        print(f"  [!] No such user: {args.username}")
        return 1
    authority.deactivate_user(user.id)
    print(f"  Deactivated {user.username}. Live access tokens expire on their own; refresh is refused.")
    return 0


def cmd_prune_audit(authority: Authority, args: argparse.Namespace) -> int:
    keep = args.keep if args.keep is not None else authority.settings.audit_retention
    pruned = authority.audit.prune(keep)
    purged = authority.store.purge_expired_refresh_tokens(authority.clock())
    print(f"  Pruned {pruned} security event(s) (kept newest {keep}); purged {purged} expired refresh token(s).")
    return 0


def cmd_events(authority: Authority, args: argparse.Namespace) -> int:
    events = authority.audit.recent(limit=args.limit, username=args.username, kind=args.kind)
    if not events:
        print("  No security events.")
        return 0
    for e in events:
        print(
            f"  {e.timestamp.isoformat(timespec='seconds')}  {e.kind:<18} {e.username or '-':<16} "
            f"{e.ip_address or '-':<15} {e.details or ''}"
        )
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sanctum",
        description="Provision accounts and inspect the security audit log.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py seed
  python main.py create-user alice --role pastor --permission manage_videos
  python main.py events --kind lockout
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    seed = sub.add_parser("seed", help="Create the default admin and pastor accounts (empty store only)")
    seed.add_argument("--admin-password", metavar="PASSWORD", help="Initial admin password (generated if omitted)")
    seed.add_argument("--pastor-password", metavar="PASSWORD", help="Initial pastor password (generated if omitted)")
    seed.set_defaults(handler=cmd_seed)

    create = sub.add_parser("create-user", help="Provision a single account")
    create.add_argument("username")
    create.add_argument("--role", choices=[r.value for r in Role], default=Role.user.value)
    create.add_argument(
        "--permission",
        action="append",
        metavar="NAME",
        help="Grant a permission (repeatable), e.g. manage_videos",
    )
    create.add_argument("--password", help="Initial password (prompted if omitted)")
    create.set_defaults(handler=cmd_create_user)

    deactivate = sub.add_parser("deactivate", help="Soft-delete an account and revoke its refresh tokens")
    deactivate.add_argument("username")
    deactivate.set_defaults(handler=cmd_deactivate)

    prune = sub.add_parser("prune-audit", help="Apply audit retention and purge expired refresh tokens")
    prune.add_argument("--keep", type=_non_negative_int, metavar="N", help="Events to keep (default: AUDIT_RETENTION)")
    prune.set_defaults(handler=cmd_prune_audit)

    events = sub.add_parser("events", help="Print recent security events, newest first")
    events.add_argument("--limit", type=int, default=50)
    events.add_argument("--username")
    events.add_argument("--kind", choices=[k.value for k in EventKind])
    events.set_defaults(handler=cmd_events)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    args = build_parser().parse_args(argv)
    authority = Authority.from_settings(get_settings())
    try:
        return args.handler(authority, args)
    finally:
        authority.close()


if __name__ == "__main__":
    sys.exit(main())
