#!/usr/bin/env python3
"""Database overview and invariant checks for Cabinet Lending."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine

from cabinet_lending.db.base import Base
from cabinet_lending.models import lending_models  # noqa: F401  registers tables on Base


EXPECTED_TABLES = [
    "Stations",
    "CatalogItems",
    "StationStock",
    "EquipmentRequests",
    "RequestItems",
    "BorrowRecords",
    "AlertTracking",
    "AuditLogs",
    "NotificationQueue",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "StationStock": ["StationStockID", "StationID", "CatalogItemID", "Quantity", "Condition", "IsConsumable", "FaultySince"],
    "EquipmentRequests": ["RequestID", "StationID", "Status", "Token", "TokenHash", "ExpiresAt", "ApprovedBy", "ApprovedAt"],
    "BorrowRecords": ["BorrowID", "StationID", "CatalogItemID", "RequestID", "BorrowerPhone", "Status", "BorrowDate"],
    "AlertTracking": ["AlertID", "StationID", "AlertType", "SubjectID", "LastAlertAt", "AlertCount", "ResolvedAt"],
    "NotificationQueue": ["NotificationID", "NotificationType", "Channel", "Recipient", "SentAt", "Attempts"],
}


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _table_names(engine: Engine) -> set[str]:
    return set(inspect(engine).get_table_names())


def _run_existence_checks(engine: Engine) -> list[CheckResult]:
    present = _table_names(engine)
    return [
        CheckResult(f"table:{table}", table in present, "present" if table in present else "missing")
        for table in EXPECTED_TABLES
    ]


def _run_column_checks(engine: Engine) -> list[CheckResult]:
    present = _table_names(engine)
    inspector = inspect(engine)
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in present:
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = {column["name"] for column in inspector.get_columns(table)}
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def _count_check(engine: Engine, name: str, sql: str) -> CheckResult:
    count = int(_scalar(engine, sql) or 0)
    return CheckResult(name, count == 0, f"count={count}")


def _run_integrity_checks(engine: Engine) -> list[CheckResult]:
    present = _table_names(engine)
    checks: list[CheckResult] = []

    if "StationStock" in present:
        checks.append(
            _count_check(engine, "stationstock:negative_quantity", "SELECT COUNT(*) FROM StationStock WHERE Quantity < 0")
        )
        checks.append(
            _count_check(
                engine,
                "stationstock:faulty_without_since",
                "SELECT COUNT(*) FROM StationStock WHERE Condition = 'faulty' AND FaultySince IS NULL",
            )
        )

    if "AlertTracking" in present:
        checks.append(
            _count_check(
                engine,
                "alerttracking:duplicate_open_rows",
                """
                SELECT COUNT(*)
                FROM (
                    SELECT StationID, AlertType, SubjectID
                    FROM AlertTracking
                    WHERE ResolvedAt IS NULL
                    GROUP BY StationID, AlertType, SubjectID
                    HAVING COUNT(*) > 1
                ) d
                """,
            )
        )

    if "BorrowRecords" in present and "EquipmentRequests" in present:
        checks.append(
            _count_check(
                engine,
                "borrowrecords:open_for_cancelled_request",
                """
                SELECT COUNT(*)
                FROM BorrowRecords b
                JOIN EquipmentRequests r ON r.RequestID = b.RequestID
                WHERE b.Status = 'borrowed' AND r.Status = 'cancelled'
                """,
            )
        )

    if "EquipmentRequests" in present:
        checks.append(
            _count_check(
                engine,
                "equipmentrequests:picked_up_without_approver",
                "SELECT COUNT(*) FROM EquipmentRequests WHERE Status = 'picked_up' AND ApprovedAt IS NULL",
            )
        )

    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    present = _table_names(engine)
    for table in EXPECTED_TABLES:
        if table not in present:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Cabinet Lending DB overview")
    parser.add_argument("--db-url", default=os.environ.get("CABINET_LENDING_DB_URL", ""))
    parser.add_argument("--create-missing", action="store_true", help="Create missing tables before checking.")
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("CABINET_LENDING_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        # Force a quick connectivity check first.
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    if args.create_missing:
        Base.metadata.create_all(bind=engine)

    integrity = _run_integrity_checks(engine)
    _print_results("Table Existence", _run_existence_checks(engine))
    _print_results("Column Checks", _run_column_checks(engine))
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    return 0 if all(row.ok for row in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
