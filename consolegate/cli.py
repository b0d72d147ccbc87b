"""Command-line access to the admin console session.

Usage:
    consolegate login --email admin@example.com
    consolegate whoami
    consolegate check-route /team
    consolegate backup-codes        # asks for a fresh verification code
    consolegate logout

Environment Variables:
    CONSOLE_API_URL: Base URL of the authentication service
    CONSOLE_EMAIL: Default email for ``login``
    CONSOLE_PASSWORD: Password for ``login`` (prompted when unset)
    CONSOLE_TOKEN_STORAGE: memory, file or redis
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import os
import sys
from typing import Awaitable, Callable, Dict, List, Optional

from consolegate.logging import get_logger
from consolegate.service.errors import AuthenticationError, ServiceError
from consolegate.service.routes import post_login_route
from consolegate.service.runtime import ConsoleRuntime, get_runtime
from consolegate.service.session import SessionStore
from consolegate.storage.models import Phase, SessionSnapshot

logger = get_logger(__name__)

Handler = Callable[[ConsoleRuntime, argparse.Namespace], Awaitable[int]]


def _prompt_code(args: argparse.Namespace, prompt: str = "Verification code (blank to cancel): ") -> str:
    # --code is used for the first attempt only
    code, args.code = args.code, None
    if code:
        return code
    return input(prompt).strip()


async def _signed_in(session: SessionStore) -> SessionSnapshot:
    snapshot = await session.initialize()
    if not snapshot.is_authenticated:
        raise AuthenticationError(
            snapshot.last_error or "Not signed in. Run `consolegate login` first."
        )
    return snapshot


async def cmd_login(runtime: ConsoleRuntime, args: argparse.Namespace) -> int:
    session = runtime.session
    snapshot = await session.initialize()
    if snapshot.is_authenticated:
        print(f"Already signed in as {snapshot.operator.email}")
        return 0

    if not args.email:
        print("Error: --email or CONSOLE_EMAIL environment variable required")
        return 1
    password = args.password or getpass.getpass("Password: ")
    snapshot = await session.login(args.email, password)
    while snapshot.phase is Phase.AWAITING_MFA:
        if snapshot.last_error:
            print(f"Error: {snapshot.last_error}")
        code = _prompt_code(args)
        if not code:
            session.cancel_mfa()
            print("Sign-in cancelled.")
            return 1
        snapshot = await session.verify_mfa(code)

    if not snapshot.is_authenticated:
        print(f"Error: {snapshot.last_error}")
        return 1
    operator = snapshot.operator
    print(f"Signed in as {operator.display_name} <{operator.email}>")
    print(f"Continue at {post_login_route(args.return_to, settings=runtime.settings)}")
    return 0


async def cmd_logout(runtime: ConsoleRuntime, args: argparse.Namespace) -> int:
    await runtime.session.initialize()
    await runtime.session.logout()
    print("Signed out.")
    return 0


async def cmd_whoami(runtime: ConsoleRuntime, args: argparse.Namespace) -> int:
    operator = (await _signed_in(runtime.session)).operator
    print(f"{operator.display_name} <{operator.email}>")
    print(f"  Role: {operator.role_name or operator.role}")
    if operator.department_name:
        print(f"  Department: {operator.department_name}")
    print(f"  MFA: {'enabled' if operator.mfa_enabled else 'disabled'}")
    print("  Capabilities:")
    for capability in sorted(operator.capabilities, key=lambda c: c.value):
        print(f"    - {capability.value}")
    return 0


async def cmd_status(runtime: ConsoleRuntime, args: argparse.Namespace) -> int:
    snapshot = await runtime.session.initialize()
    print(f"Phase: {snapshot.phase.value}")
    if snapshot.operator is not None:
        print(f"Operator: {snapshot.operator.email}")
    if snapshot.last_error:
        print(f"Last error: {snapshot.last_error}")
    return 0


async def cmd_mfa_status(runtime: ConsoleRuntime, args: argparse.Namespace) -> int:
    await _signed_in(runtime.session)
    status = await runtime.verifier.get_mfa_status()
    print(f"MFA enabled: {'yes' if status.mfa_enabled else 'no'}")
    print(f"MFA required by policy: {'yes' if status.mfa_required else 'no'}")
    return 0


async def cmd_mfa_setup(runtime: ConsoleRuntime, args: argparse.Namespace) -> int:
    await _signed_in(runtime.session)
    setup = await runtime.verifier.setup_mfa()
    print("Add this secret to your authenticator app:")
    print(f"  {setup.secret}")
    print("Then run `consolegate mfa-enable --code <6-digit code>`.")
    return 0


def _print_backup_codes(codes: List[str]) -> None:
    print("Backup codes (store them somewhere safe):")
    for code in codes:
        print(f"  {code}")


async def cmd_mfa_enable(runtime: ConsoleRuntime, args: argparse.Namespace) -> int:
    await _signed_in(runtime.session)
    code = _prompt_code(args, "Code from your authenticator app: ")
    codes = await runtime.verifier.enable_mfa(code)
    await runtime.session.refresh_profile()
    print("MFA enabled.")
    if codes:
        _print_backup_codes(codes)
    return 0


async def cmd_mfa_disable(runtime: ConsoleRuntime, args: argparse.Namespace) -> int:
    await _signed_in(runtime.session)
    code = _prompt_code(args, "Code from your authenticator app: ")
    await runtime.verifier.disable_mfa(code)
    await runtime.session.refresh_profile()
    print("MFA disabled.")
    return 0


async def cmd_backup_codes(runtime: ConsoleRuntime, args: argparse.Namespace) -> int:
    await _signed_in(runtime.session)
    coordinator = runtime.step_up(
        "view_backup_codes", "Viewing backup codes requires MFA verification."
    )
    codes = await coordinator.execute_with_mfa(
        lambda action_token: runtime.verifier.get_backup_codes()
    )
    while coordinator.is_challenge_open:
        if coordinator.error:
            print(f"Error: {coordinator.error}")
        code = _prompt_code(args)
        if not code:
            coordinator.close_challenge()
            print("Cancelled.")
            return 1
        codes = await coordinator.handle_mfa_verified(code)

    if codes is None:
        print(f"Error: {coordinator.error or 'Verification failed.'}")
        return 1
    _print_backup_codes(codes)
    return 0


async def cmd_sessions(runtime: ConsoleRuntime, args: argparse.Namespace) -> int:
    await _signed_in(runtime.session)
    if args.revoke_others:
        await runtime.verifier.revoke_other_sessions()
        print("Other sessions revoked.")
        return 0
    for active in await runtime.verifier.list_sessions():
        marker = "*" if active.current else " "
        seen = active.last_active.isoformat() if active.last_active else "-"
        print(f"{marker} {active.id}  {active.device or '-'}  {active.ip or '-'}  {seen}")
    return 0


async def cmd_check_route(runtime: ConsoleRuntime, args: argparse.Namespace) -> int:
    await runtime.session.initialize()
    decision = runtime.guard(args.path)
    line = f"{args.path}: {decision.outcome.value}"
    if decision.redirect_to:
        line += f" -> {decision.redirect_to}"
    if decision.return_to:
        line += f" (return to {decision.return_to})"
    print(line)
    return 0 if decision.allowed else 2


COMMANDS: Dict[str, Handler] = {
    "login": cmd_login,
    "logout": cmd_logout,
    "whoami": cmd_whoami,
    "status": cmd_status,
    "mfa-status": cmd_mfa_status,
    "mfa-setup": cmd_mfa_setup,
    "mfa-enable": cmd_mfa_enable,
    "mfa-disable": cmd_mfa_disable,
    "backup-codes": cmd_backup_codes,
    "sessions": cmd_sessions,
    "check-route": cmd_check_route,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="consolegate",
        description="Admin console session and step-up tooling",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    login = sub.add_parser("login", help="Sign in (prompts for MFA when enabled)")
    login.add_argument(
        "--email",
        default=os.environ.get("CONSOLE_EMAIL"),
        help="Operator email (or set CONSOLE_EMAIL env var)",
    )
    login.add_argument(
        "--password",
        default=os.environ.get("CONSOLE_PASSWORD"),
        help="Operator password (or set CONSOLE_PASSWORD; prompted otherwise)",
    )
    login.add_argument("--code", help="Verification code for the first MFA attempt")
    login.add_argument("--return-to", help="Console path to continue at after sign-in")

    sub.add_parser("logout", help="Sign out and forget stored tokens")
    sub.add_parser("whoami", help="Show the signed-in operator")
    sub.add_parser("status", help="Show the session phase")
    sub.add_parser("mfa-status", help="Show MFA enrolment")
    sub.add_parser("mfa-setup", help="Start MFA enrolment")
    for name in ("mfa-enable", "mfa-disable", "backup-codes"):
        command = sub.add_parser(name)
        command.add_argument("--code", help="Verification code (prompted otherwise)")

    sessions = sub.add_parser("sessions", help="List active sign-ins")
    sessions.add_argument("--revoke-others", action="store_true")

    check = sub.add_parser("check-route", help="Show how a console path would render")
    check.add_argument("path")
    return parser


async def _run(args: argparse.Namespace) -> int:
    runtime = get_runtime()
    try:
        return await COMMANDS[args.command](runtime, args)
    finally:
        await runtime.aclose()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(_run(args))
    except ServiceError as exc:
        logger.info("cli_command_failed", command=args.command, error_code=exc.error_code)
        print(f"Error: {exc.message}")
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
