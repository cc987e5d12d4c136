"""
authcore Console Entry Point.

Bootstraps the session layer via constructor injection, initialises the
local SQLite schema, restores any saved session and then runs an
interactive login / OTP session against the configured backend.
Every subsystem is wired here; there are no module-level globals.

Usage::

    API_BASE_URL=https://api.example.com python main.py login 0987654321
    python main.py status
    python main.py logout
"""

from __future__ import annotations

import argparse
import asyncio
import atexit
import getpass
import sys
from pathlib import Path
from typing import Optional

from authcore.api_client import HttpAuthApi
from authcore.config import get_config
from authcore.database import DatabaseManager
from authcore.logger import StructuredLogger, get_logger
from authcore.models.enums import AccountKind, FlowKind, LoginClassification
from authcore.schema import initialize_schema
from authcore.services import ServiceContainer, create_services
from authcore.services.auth_service import AuthService
from authcore.services.key_store import SoftwareKeyStore
from authcore.services.secure_storage import EncryptedKeyValueStore
from authcore.utils.credentials import format_display_phone


async def _console_prompt(message: str) -> bool:
    answer = await asyncio.to_thread(input, f"{message} [y/N]: ")
    return answer.strip().lower() in ("y", "yes")


async def _run_otp(auth: AuthService, flow: FlowKind, phone: str) -> bool:
    """Drive one OTP flow from the console; returns ``True`` on success."""
    machine = auth.create_otp_flow(flow, phone)
    print(f"A verification code was sent to {format_display_phone(machine.attempt.phone)}.")
    while True:
        code = await asyncio.to_thread(input, "Code (blank to resend, 'q' to quit): ")
        code = code.strip()
        if code.lower() == "q":
            return False
        if not code:
            outcome = await machine.resend()
            if outcome.skipped:
                print(f"Please wait {machine.remaining_cooldown():.0f}s before resending.")
            elif not outcome.success:
                print(outcome.message)
            continue

        outcome = await machine.input_code(code)
        if outcome is None:
            outcome = await machine.submit()
        if outcome.skipped:
            continue
        if outcome.success:
            return True
        if outcome.message:
            print(outcome.message)


async def _login(auth: AuthService, phone: str, account_kind: AccountKind) -> int:
    password = await asyncio.to_thread(getpass.getpass, "Password: ")
    result = await auth.login(phone, password, account_kind)
    if result.success:
        print(f"Signed in as {result.user.full_name if result.user else phone}.")
        return 0

    if result.classification is LoginClassification.NEW_DEVICE:
        print("This device is new for your account.")
        if await _run_otp(auth, FlowKind.NEW_DEVICE, phone) and auth.snapshot.is_authenticated:
            print("Device verified; signed in.")
            return 0
        return 1
    if result.classification is LoginClassification.UNVERIFIED:
        print("Your account is not verified yet.")
        if await _run_otp(auth, FlowKind.REGISTER, phone):
            print("Account verified; please sign in again.")
        return 1

    print(result.error_message)
    return 1


async def _run(args: argparse.Namespace, logger: StructuredLogger) -> int:
    config = get_config()

    db = DatabaseManager(
        sqlite_path=Path(config.STORAGE_PATH),
        logger=StructuredLogger(name="database"),
    )
    atexit.register(db.close)
    initialize_schema(db.sqlite, StructuredLogger(name="schema"))

    storage = EncryptedKeyValueStore(
        db=db,
        logger=StructuredLogger(name="secure_storage"),
        salt_path=config.storage_salt_path,
        kdf_iterations=config.STORAGE_KDF_ITERATIONS,
    )
    api = HttpAuthApi(config=config, logger=get_logger("api"))
    services: ServiceContainer = create_services(
        config=config,
        storage=storage,
        api=api,
        key_store=SoftwareKeyStore(prompt=_console_prompt, storage=storage),
    )
    auth = services["auth_service"]

    try:
        snapshot = await auth.initialize()
        account_kind = AccountKind(args.account_kind)

        if args.command == "status":
            user = snapshot.user
            state = "signed in" if snapshot.is_authenticated else "signed out"
            print(f"Session: {state}" + (f" ({user.full_name or user.id})" if user else ""))
            return 0
        if args.command == "logout":
            await auth.logout()
            print("Signed out.")
            return 0
        if args.command == "login":
            return await _login(auth, args.phone, account_kind)
        return 2
    finally:
        await api.aclose()
        db.close()
        logger.info("authcore console shut down.")


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="authcore", description="Session layer console.")
    parser.add_argument(
        "--account-kind",
        choices=[kind.value for kind in AccountKind],
        default=AccountKind.USER.value,
    )
    sub = parser.add_subparsers(dest="command", required=True)
    login = sub.add_parser("login", help="Sign in with phone and password.")
    login.add_argument("phone")
    sub.add_parser("status", help="Show the restored session.")
    sub.add_parser("logout", help="Sign out and clear local state.")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    """Application entry point: wire dependencies and run one command."""
    logger: StructuredLogger = get_logger("main")
    args = _parse_args(argv)
    return asyncio.run(_run(args, logger))


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        sys.exit(130)
