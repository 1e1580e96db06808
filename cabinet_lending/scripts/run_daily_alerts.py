#!/usr/bin/env python3
"""Run the low-stock and faulty-equipment alert pass for every active station."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from cabinet_lending.services.alert_service import run_daily_alerts
from cabinet_lending.services.notification_service import build_notifier


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Send due low-stock and faulty-equipment alerts to station managers.")
    parser.add_argument(
        "--db-url",
        default=None,
        help="SQLAlchemy DB URL; defaults to CABINET_LENDING_DB_URL env var.",
    )
    parser.add_argument(
        "--now",
        default=None,
        help="Evaluate as of this ISO timestamp instead of the current time.",
    )
    parser.add_argument("--verbose", action="store_true", help="Log every alert batch.")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    db_url = (args.db_url or "").strip()
    if not db_url:
        from cabinet_lending.config import _require_env

        try:
            db_url = _require_env("CABINET_LENDING_DB_URL")
        except RuntimeError as exc:
            print(f"{exc}. Provide --db-url or export env first.")
            return 2

    try:
        now = datetime.fromisoformat(args.now) if args.now else datetime.now()
    except ValueError:
        print(f"Invalid --now value: {args.now}")
        return 2

    engine = create_engine(db_url, pool_pre_ping=True, future=True)
    session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)
    with session_factory() as db:
        outcome = run_daily_alerts(db, build_notifier(), now)

    print(json.dumps(outcome, ensure_ascii=True, indent=2, default=str))
    return 1 if outcome["summary"]["errors"] else 0


if __name__ == "__main__":
    sys.exit(main())
