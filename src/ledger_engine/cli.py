"""Ledger engine command line interface.

Provides operational tools for:
- Schema creation
- Outbox draining (one-shot or polling worker)
- Ledger inspection

Usage:
    python -m ledger_engine init-db
    python -m ledger_engine drain-outbox --loop --interval 5
    python -m ledger_engine show-ledger --ledger-id X
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Callable
from uuid import UUID

from ledger_engine.config import get_settings
from ledger_engine.database import create_schema, get_engine, make_session_factory
from ledger_engine.events.emitter import AsyncEventEmitter
from ledger_engine.events.handlers import register_default_handlers
from ledger_engine.events.outbox import OutboxDispatcher, OutboxStore
from ledger_engine.services.workflow import LedgerWorkflow

logger = logging.getLogger(__name__)


def parse_uuid(s: str) -> UUID:
    """Parse UUID string."""
    return UUID(s)


class LedgerCli:
    """Ledger engine Command Line Interface."""

    def __init__(self) -> None:
        self.parser = self._build_parser()

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="python -m ledger_engine",
            description="Ledger engine operational tools",
        )
        parser.add_argument(
            "--database-url",
            type=str,
            help="Database URL (default: $DATABASE_URL)",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        subparsers.add_parser(
            "init-db",
            help="Create all ledger tables",
        )

        drain = subparsers.add_parser(
            "drain-outbox",
            help="Dispatch pending outbox events to handlers",
        )
        drain.add_argument(
            "--loop",
            action="store_true",
            help="Keep polling until interrupted",
        )
        drain.add_argument(
            "--interval",
            type=float,
            default=5.0,
            help="Polling interval in seconds (default: 5)",
        )
        drain.add_argument(
            "--batch-size",
            type=int,
            help="Events per drain pass (default: $OUTBOX_BATCH_SIZE)",
        )

        show = subparsers.add_parser(
            "show-ledger",
            help="Print a ledger with its approval track and activity",
        )
        show.add_argument(
            "--ledger-id",
            type=parse_uuid,
            required=True,
            help="Ledger ID",
        )

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 1

        settings = get_settings()
        logging.basicConfig(
            level=settings.log_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

        handlers: dict[str, Callable[[argparse.Namespace], int]] = {
            "init-db": self._cmd_init_db,
            "drain-outbox": self._cmd_drain_outbox,
            "show-ledger": self._cmd_show_ledger,
        }

        handler = handlers.get(parsed.command)
        if handler:
            return handler(parsed)

        print(f"Unknown command: {parsed.command}", file=sys.stderr)
        return 1

    def _cmd_init_db(self, args: argparse.Namespace) -> int:
        """Create the schema."""

        async def run() -> None:
            engine = get_engine(args.database_url)
            try:
                await create_schema(engine)
            finally:
                await engine.dispose()

        asyncio.run(run())
        print("Schema created.")
        return 0

    def _cmd_drain_outbox(self, args: argparse.Namespace) -> int:
        """Drain the outbox once, or poll with --loop."""
        settings = get_settings()

        async def run() -> int:
            engine = get_engine(args.database_url)
            factory = make_session_factory(engine)
            emitter = register_default_handlers(
                AsyncEventEmitter(), factory, date_format=settings.date_format
            )
            dispatcher = OutboxDispatcher(
                factory,
                emitter,
                batch_size=args.batch_size or settings.outbox_batch_size,
                max_attempts=settings.outbox_max_attempts,
            )
            try:
                if args.loop:
                    await dispatcher.run_forever(args.interval)
                result = await dispatcher.drain_all()
                async with factory() as session:
                    remaining = await OutboxStore(session).count_pending(
                        settings.outbox_max_attempts
                    )
            finally:
                await engine.dispose()

            print(f"Dispatched: {len(result.dispatched)}")
            print(f"Failed:     {len(result.failed)}")
            for event_id, message in result.failed.items():
                print(f"  {event_id}: {message}")
            print(f"Pending:    {remaining}")
            return 0 if not result.failed else 2

        try:
            return asyncio.run(run())
        except KeyboardInterrupt:
            print("\nStopped.")
            return 0

    def _cmd_show_ledger(self, args: argparse.Namespace) -> int:
        """Print one ledger as JSON."""

        async def run() -> int:
            engine = get_engine(args.database_url)
            try:
                workflow = LedgerWorkflow(make_session_factory(engine))
                result = await workflow.get_ledger(args.ledger_id)
            finally:
                await engine.dispose()

            if not result.ok:
                print(f"{result.code}: {result.error}", file=sys.stderr)
                return 1
            print(json.dumps(result.data, indent=2, default=str))
            return 0

        return asyncio.run(run())


def main() -> None:
    """CLI entry point."""
    cli = LedgerCli()
    sys.exit(cli.run())


if __name__ == "__main__":
    main()
