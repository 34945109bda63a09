#!/usr/bin/env python3
"""
Gatehouse -- operator CLI for the credential and session core.

Usage:
  python main.py cleanup
  python main.py check-password
  python main.py check-password --email a@example.com --name "Ann Lee"
  python main.py create-user a@example.com --name "Ann Lee"

Every command builds the provider from the same Settings as the API
(DATABASE_URL, BCRYPT_ROUNDS, SECRET_KEY, ...), so a user created here can
sign in over HTTP.

Passwords are read with getpass, never from argv, so they stay out of shell
history and the process list.
"""

import argparse
import getpass
import json
import logging
import sys

from auth.factory import build_auth_provider
from auth.passwords import strength_label
from core.config import get_settings


def _prompt_password(confirm: bool = False) -> str:
    password = getpass.getpass("Password: ")
    if confirm and getpass.getpass("Repeat password: ") != password:
        print("  [!] Passwords do not match.")
        sys.exit(2)
    return password


def cmd_cleanup(provider, args: argparse.Namespace) -> int:
    removed = provider.run_maintenance()
    if args.json:
        print(json.dumps(removed))
    else:
        for kind, count in removed.items():
            print(f"  {kind:<22} {count} removed")
    return 0


def cmd_check_password(provider, args: argparse.Namespace) -> int:
    password = _prompt_password()
    verdict = provider.check_password(password, args.email, args.name)
    suggestions = provider.policy.get_suggestions(password)
    if args.json:
        print(
            json.dumps(
                {
                    "is_valid": verdict.is_valid,
                    "score": verdict.score,
                    "label": strength_label(verdict.score),
                    "errors": verdict.errors,
                    "suggestions": suggestions,
                }
            )
        )
    else:
        print(f"  Score: {verdict.score}/100 ({strength_label(verdict.score)})")
        print(f"  Valid: {'yes' if verdict.is_valid else 'no'}")
        for error in verdict.errors:
            print(f"  [!] {error}")
        for tip in suggestions:
            print(f"  - {tip}")
    return 0 if verdict.is_valid else 1


def cmd_create_user(provider, args: argparse.Namespace) -> int:
    password = _prompt_password(confirm=True)
    result = provider.create_user(args.email, password, args.name)
    if not result.success:
        print(f"  [!] {result.error}")
        for detail in result.details:
            print(f"      - {detail}")
        return 1
    print(f"  Created user {result.user.email} (id {result.user.id})")
    if args.send_verification:
        provider.send_email_verification(result.user.email)
        print("  Verification email requested")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="gatehouse",
        description="Operator commands for Gatehouse accounts, sessions and tokens.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py cleanup
  python main.py cleanup --json
  python main.py check-password --email a@example.com
  DATABASE_URL=sqlite:///prod.db python main.py create-user a@example.com
        """,
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output structured JSON where the command supports it",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Show INFO-level logs from the auth core",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sub.add_parser("cleanup", help="Delete expired tokens, expired sessions and stale rate-limit counters")

    check = sub.add_parser("check-password", help="Score a password against the configured policy")
    check.add_argument("--email", help="Account email, for the personal-information rule")
    check.add_argument("--name", help="Account display name, for the personal-information rule")

    create = sub.add_parser("create-user", help="Create a password account")
    create.add_argument("email", help="Email address for the new account")
    create.add_argument("--name", help="Display name")
    create.add_argument(
        "--send-verification",
        action="store_true",
        help="Email a verification link after creating the account",
    )

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(2)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    provider = build_auth_provider(get_settings())
    commands = {
        "cleanup": cmd_cleanup,
        "check-password": cmd_check_password,
        "create-user": cmd_create_user,
    }
    try:
        code = commands[args.command](provider, args)
    finally:
        provider.store.close()
    sys.exit(code)


if __name__ == "__main__":
    main()
