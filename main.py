#!/usr/bin/env python3
"""
StagePass -- command-line client for the StagePass auth API.

Keeps one encrypted session on this machine and renews it automatically.

Usage:
  python main.py register --email ax@example.com --username ax
  python main.py login ax
  python main.py whoami
  python main.py permissions
  python main.py refresh
  python main.py logout
  python main.py strength

Environment variables:
  API_BASE_URL             API root (default http://localhost:8000/api/v1)
  REQUEST_TIMEOUT_SECONDS  Per-request timeout (default 10)
  SESSION_DIR              Where the encrypted session lives (default ~/.stagepass)
  SESSION_ENCRYPTION_KEY   Fernet key for the session file. Generated into
                           SESSION_DIR/session.key when not set.
"""

import argparse
import getpass
import json
import logging
from typing import Optional

from auth.errors import AuthError
from auth.models import Session
from auth.permissions import current_permissions, permission_display_name, role_display_name, tier_display_name
from auth.validation import password_strength
from client.backends import HttpAuthBackend
from client.session import SessionManager, SessionState
from client.storage import EncryptedFileStorage
from core.config import get_client_settings


def _prompt_password(prompt: str = "Password: ", confirm: bool = False) -> str:
    password = getpass.getpass(prompt)
    if confirm and getpass.getpass("Confirm password: ") != password:
        raise SystemExit("  [!] Passwords do not match.")
    return password


def _report_error(error: AuthError) -> int:
    where = f" ({error.field})" if error.field else ""
    print(f"  [!] {error.message}{where}")
    return 1


def _print_session(session: Session) -> None:
    identity = session.identity
    print(f"  {identity.display_name} (@{identity.username}) <{identity.email}>")
    print(f"  Role: {role_display_name(identity.role)}   Tier: {tier_display_name(identity.subscription_tier)}")
    print(f"  Access token expires {session.tokens.access_expires_at.isoformat()}")


def _build_manager() -> SessionManager:
    settings = get_client_settings()
    backend = HttpAuthBackend(settings.api_base_url, timeout=settings.request_timeout_seconds)
    storage = EncryptedFileStorage(settings.session_dir, settings.session_encryption_key)
    return SessionManager(backend, SessionState(storage), settings)


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def cmd_register(manager: SessionManager, args: argparse.Namespace) -> int:
    password = args.password or _prompt_password(confirm=True)
    result = manager.register(args.email, args.username, password, args.display_name)
    if isinstance(result, AuthError):
        return _report_error(result)
    print("  Account created.")
    _print_session(result)
    return 0


def cmd_login(manager: SessionManager, args: argparse.Namespace) -> int:
    password = args.password or _prompt_password()
    result = manager.login(args.identifier, password)
    if isinstance(result, AuthError):
        return _report_error(result)
    print("  Logged in.")
    _print_session(result)
    return 0


def cmd_whoami(manager: SessionManager, args: argparse.Namespace) -> int:
    """Ask the server who the stored session belongs to (refreshing if needed)."""
    backend: HttpAuthBackend = manager.backend
    resp = manager.call(lambda token: backend.request("GET", "/auth/me", token))
    if isinstance(resp, AuthError):
        return _report_error(resp)
    if resp.status_code != 200:
        print(f"  [!] Server returned HTTP {resp.status_code}.")
        return 1
    try:
        data = resp.json()
    except ValueError:
        print("  [!] The server sent a response that could not be read.")
        return 1
    if args.json:
        print(json.dumps(data, indent=2))
        return 0
    user = data["user"]
    print(f"  {user['display_name']} (@{user['username']}) <{user['email']}>")
    print(f"  Role: {data['role_display_name']}   Tier: {data['tier_display_name']}")
    return 0


def cmd_permissions(manager: SessionManager, args: argparse.Namespace) -> int:
    """List what the stored session's role grants. Works offline."""
    session = manager.state.session
    if session is None:
        print("  Not logged in. Guests may:")
    else:
        print(f"  {role_display_name(session.identity.role)} may:")
    granted = sorted(current_permissions(session), key=lambda p: p.value)
    for permission in granted:
        print(f"    - {permission_display_name(permission)}")
    return 0


def cmd_refresh(manager: SessionManager, args: argparse.Namespace) -> int:
    result = manager.refresh()
    if isinstance(result, AuthError):
        if manager.state.error:
            print(f"  [!] {manager.state.error}")
            return 1
        return _report_error(result)
    print(f"  Access token renewed; expires {result.access_expires_at.isoformat()}")
    return 0


def cmd_logout(manager: SessionManager, args: argparse.Namespace) -> int:
    if manager.state.session is None:
        print("  Not logged in.")
        return 0
    manager.logout()
    print("  Logged out.")
    return 0


def cmd_strength(manager: Optional[SessionManager], args: argparse.Namespace) -> int:
    strength = password_strength(args.password or _prompt_password())
    print(f"  Strength: {strength.label} ({strength.score}/5)")
    for hint in strength.feedback:
        print(f"    - {hint}")
    return 0 if strength.is_acceptable else 1


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stagepass",
        description="Log in to StagePass and manage this machine's session.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py register --email ax@example.com --username ax --display-name "Ax"
  python main.py login ax@example.com
  python main.py whoami --json
  API_BASE_URL=https://api.example.com/api/v1 python main.py login ax
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log HTTP and session activity to stderr")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("register", help="Create an account and log in")
    p.add_argument("--email", required=True)
    p.add_argument("--username", required=True, help="3-20 letters, digits or underscores")
    p.add_argument("--display-name", default=None, help="Defaults to the username")
    p.add_argument("--password", default=None, help="Prompted for when omitted")
    p.set_defaults(func=cmd_register)

    p = sub.add_parser("login", help="Log in with email or username")
    p.add_argument("identifier", metavar="EMAIL-OR-USERNAME")
    p.add_argument("--password", default=None, help="Prompted for when omitted")
    p.set_defaults(func=cmd_login)

    p = sub.add_parser("whoami", help="Show the logged-in identity as the server sees it")
    p.add_argument("--json", action="store_true", help="Print the raw JSON response")
    p.set_defaults(func=cmd_whoami)

    p = sub.add_parser("permissions", help="List the permissions of the current role")
    p.set_defaults(func=cmd_permissions)

    p = sub.add_parser("refresh", help="Renew the access token now")
    p.set_defaults(func=cmd_refresh)

    p = sub.add_parser("logout", help="End the session here and on the server")
    p.set_defaults(func=cmd_logout)

    p = sub.add_parser("strength", help="Score a password against the password policy")
    p.add_argument("--password", default=None, help="Prompted for when omitted")
    p.set_defaults(func=cmd_strength, offline=True)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if getattr(args, "offline", False):
        return args.func(None, args)

    manager = _build_manager()
    try:
        return args.func(manager, args)
    finally:
        manager.close()
        manager.backend.close()


if __name__ == "__main__":
    raise SystemExit(main())
