"""CLI tool for admin operations.

Usage:
    python -m agent_arena.cli create-admin
    python -m agent_arena.cli run [interval_minutes]
    python -m agent_arena.cli positions
    python -m agent_arena.cli close-all
    python -m agent_arena.cli close <agent_id> <symbol>
    python -m agent_arena.cli journal <agent_id> [limit]
"""

import asyncio
import getpass
import sys
from datetime import datetime

import qrcode

from agent_arena.config import settings
from agent_arena.utils.logging import setup_logging
from agent_arena.services.auth import hash_password, generate_totp_secret, get_totp_uri

USAGE = "Commands: create-admin, run, positions, close-all, close <agent_id> <symbol>, journal <agent_id> [limit]"


def create_admin():
    """Generate admin credentials for the environment file."""
    username = input(f"Username [{settings.admin_username}]: ").strip() or settings.admin_username

    password = getpass.getpass("Password: ")
    password_confirm = getpass.getpass("Confirm password: ")
    if not password:
        print("Password cannot be empty.")
        sys.exit(1)
    if password != password_confirm:
        print("Passwords do not match.")
        sys.exit(1)

    totp_secret = generate_totp_secret()
    totp_uri = get_totp_uri(totp_secret, username)

    print("\nAdd these lines to your .env file:\n")
    print(f"ARENA_ADMIN_USERNAME={username}")
    print(f"ARENA_ADMIN_PASSWORD_HASH='{hash_password(password)}'")
    print(f"ARENA_ADMIN_TOTP_SECRET={totp_secret}")
    print(f"\nTOTP URI: {totp_uri}")
    print("\nScan the QR code below with your authenticator app:")

    qr = qrcode.QRCode(box_size=1, border=1)
    qr.add_data(totp_uri)
    qr.make(fit=True)
    qr.print_ascii(invert=True)


def _supervisor():
    from agent_arena.engine.supervisor import build_supervisor
    return build_supervisor(settings)


async def _run(interval_minutes: int | None):
    from agent_arena.engine.scheduler import add_journal_flush_job, start_scheduler, stop_scheduler
    from agent_arena.engine.shutdown import ShutdownHandler

    supervisor = _supervisor()
    handler = ShutdownHandler(supervisor, close_positions=settings.close_positions_on_shutdown)
    handler.install(asyncio.get_running_loop())

    add_journal_flush_job(supervisor.journal.flush_async, settings.journal_flush_seconds)
    start_scheduler()
    result = supervisor.start_all(interval_minutes)
    print(f"Started agents {result['started']}; skipped {sorted(result['skipped'])}. Ctrl+C to stop.")

    await handler.done.wait()
    stop_scheduler()
    await supervisor.close()
    print(f"Shutdown complete: {handler.result}")


async def _positions():
    supervisor = _supervisor()
    try:
        for agent in supervisor.registry.all():
            if not agent.has_credentials:
                print(f"{agent.name}: no credentials")
                continue
            client = supervisor.registry.client_for(agent)
            open_positions = [p for p in await client.get_positions() if p.is_open]
            if not open_positions:
                print(f"{agent.name}: no open positions")
            for p in open_positions:
                print(
                    f"{agent.name}: {p.side} {p.symbol} {abs(p.position_amt)} @ {p.entry_price} "
                    f"mark={p.mark_price} pnl={p.unrealized_profit:.2f} {p.leverage}x"
                )
    finally:
        await supervisor.close()


async def _close_all():
    from agent_arena.services.emergency_stop import run_emergency_stop

    supervisor = _supervisor()
    try:
        result = await run_emergency_stop(supervisor, close_positions=True, stop_agents=True)
    finally:
        await supervisor.close()
    print(f"Closed {result['positions_closed']} positions.")
    for error in result["errors"]:
        print(f"  error: {error}")


async def _close(agent_id: int, symbol: str):
    supervisor = _supervisor()
    try:
        result = await supervisor.close_position(agent_id, symbol.upper())
        supervisor.journal.flush()
    finally:
        await supervisor.close()
    print(result["message"])


def show_journal(agent_id: int, limit: int | None):
    from agent_arena.services.journal_store import JournalStore

    journal = JournalStore(
        settings.journal_path,
        max_entries_per_agent=settings.journal_max_entries_per_agent,
        max_persisted=settings.journal_max_persisted,
    )
    entries = journal.get_entries(agent_id, limit)
    if not entries:
        print(f"No journal entries for agent {agent_id}.")
        return
    for entry in entries:
        when = datetime.fromtimestamp(entry.timestamp / 1000).strftime("%Y-%m-%d %H:%M:%S")
        print(f"{when} {entry.type.value:<16} {entry.symbol or '-':<10} {entry.result or '-':<22} {entry.decision or ''}")


def main():
    if len(sys.argv) < 2:
        print("Usage: python -m agent_arena.cli <command>")
        print(USAGE)
        sys.exit(1)

    command = sys.argv[1]
    args = sys.argv[2:]
    if command == "create-admin":
        create_admin()
        return

    setup_logging()
    if command == "run":
        asyncio.run(_run(int(args[0]) if args else None))
    elif command == "positions":
        asyncio.run(_positions())
    elif command == "close-all":
        asyncio.run(_close_all())
    elif command == "close" and len(args) == 2:
        asyncio.run(_close(int(args[0]), args[1]))
    elif command == "journal" and args:
        show_journal(int(args[0]), int(args[1]) if len(args) > 1 else None)
    else:
        print(f"Unknown command or missing arguments: {' '.join(sys.argv[1:])}")
        print(USAGE)
        sys.exit(1)


if __name__ == "__main__":
    main()
