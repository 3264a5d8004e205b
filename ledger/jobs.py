"""Cron-style entry points: ``ledger-jobs <command>``."""
import argparse
import logging
from typing import List, Optional

from ledger.config import configure_logging, get_settings
from ledger.db import init_db, make_engine, make_session_factory
from ledger.errors import LedgerError
from ledger.services import LedgerServices, build_services

logger = logging.getLogger(__name__)


def process_recurring(services: LedgerServices, args) -> int:
    result = services.scheduler.process_due()
    print(f"processed={len(result.processed)} skipped={len(result.skipped)} failed={len(result.errors)}")
    for definition_id, error in result.errors.items():
        print(f"  recurring {definition_id}: {error}")
    return 1 if result.errors else 0


def fetch_rates(services: LedgerServices, args) -> int:
    count = services.resolver.update_rates(args.provider, account_only=args.account_only)
    print(f"stored {count} quotes from {args.provider}")
    return 0


def reconcile(services: LedgerServices, args) -> int:
    ledger = services.ledger
    drifts = ledger.repair_drift(args.owner) if args.repair else ledger.find_drift(args.owner)
    for drift in drifts:
        print(f"account {drift.account_id}: cached={drift.cached} replayed={drift.replayed}")
    print(f"{len(drifts)} accounts {'repaired' if args.repair else 'drifted'}")
    return 1 if drifts and not args.repair else 0


def renew_budgets(services: LedgerServices, args) -> int:
    renewed = services.budgets.renew_expired(args.owner)
    print(f"renewed {len(renewed)} budgets")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ledger-jobs", description="Ledger maintenance jobs")
    parser.add_argument("--database-url", help="overrides DATABASE_URL")
    commands = parser.add_subparsers(dest="command", required=True)

    p = commands.add_parser("process-recurring", help="fire every due recurring transaction once")
    p.set_defaults(handler=process_recurring)

    p = commands.add_parser("fetch-rates", help="store fresh quotes from a rate provider")
    p.add_argument("--provider", required=True)
    p.add_argument("--account-only", action="store_true", help="only currencies used by accounts")
    p.set_defaults(handler=fetch_rates)

    p = commands.add_parser("reconcile", help="compare cached balances with posting history")
    p.add_argument("--owner", type=int)
    p.add_argument("--repair", action="store_true")
    p.set_defaults(handler=reconcile)

    p = commands.add_parser("renew-budgets", help="roll expired budgets into the current period")
    p.add_argument("--owner", type=int, required=True)
    p.set_defaults(handler=renew_budgets)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)

    engine = make_engine(args.database_url or settings.database_url)
    init_db(engine)
    session = make_session_factory(engine)()
    try:
        return args.handler(build_services(session, settings=settings), args)
    except LedgerError as exc:
        logger.error("%s failed: %s", args.command, exc.message)
        return 2
    finally:
        session.close()
        engine.dispose()


if __name__ == "__main__":
    raise SystemExit(main())
