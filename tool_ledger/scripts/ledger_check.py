#!/usr/bin/env python3
"""Ledger overview and conservation checks for the tool inventory database."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "Tools",
    "ServiceTickets",
    "ToolAssignments",
    "ToolDamageRecords",
    "ToolActivityLog",
    "IdempotencyKeys",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "Tools": ["ToolID", "ToolCode", "ToolName", "Category", "TotalQuantity", "MinStock", "Version"],
    "ToolAssignments": [
        "AssignmentID",
        "ToolID",
        "TicketID",
        "AssignedQuantity",
        "Status",
        "AssignedAt",
        "ReturnedAt",
    ],
    "ToolDamageRecords": ["DamageID", "ToolID", "ReportedAt", "Resolved", "ResolvedAt"],
    "ToolActivityLog": ["ActivityID", "Type", "ToolID", "Message", "Actor", "CreatedAt"],
    "IdempotencyKeys": ["Scope", "Key", "PayloadHash", "EntityType", "EntityID"],
}

CONSERVATION_SQL = """
    SELECT t.ToolID,
           t.ToolName,
           t.TotalQuantity,
           COALESCE(a.InUse, 0) AS InUse,
           COALESCE(d.Damaged, 0) AS Damaged
    FROM Tools t
    LEFT JOIN (
        SELECT ToolID, SUM(AssignedQuantity) AS InUse
        FROM ToolAssignments
        WHERE Status = 'Active'
        GROUP BY ToolID
    ) a ON a.ToolID = t.ToolID
    LEFT JOIN (
        SELECT ToolID, COUNT(*) AS Damaged
        FROM ToolDamageRecords
        WHERE Resolved = 0
        GROUP BY ToolID
    ) d ON d.ToolID = t.ToolID
    ORDER BY t.ToolID
"""


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


def _rows(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).all()


def _run_existence_checks(engine: Engine) -> list[CheckResult]:
    present = set(inspect(engine).get_table_names())
    return [
        CheckResult(f"table:{table}", table in present, "present" if table in present else "missing")
        for table in EXPECTED_TABLES
    ]


def _run_column_checks(engine: Engine) -> list[CheckResult]:
    inspector = inspect(engine)
    present = set(inspector.get_table_names())
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
    return [
        _count_check(
            engine,
            "assignments:non_positive_quantity",
            "SELECT COUNT(*) FROM ToolAssignments WHERE AssignedQuantity < 1",
        ),
        _count_check(
            engine,
            "assignments:returned_without_timestamp",
            "SELECT COUNT(*) FROM ToolAssignments WHERE Status = 'Returned' AND ReturnedAt IS NULL",
        ),
        _count_check(
            engine,
            "assignments:orphan_toolid",
            """
            SELECT COUNT(*)
            FROM ToolAssignments a
            LEFT JOIN Tools t ON t.ToolID = a.ToolID
            WHERE t.ToolID IS NULL
            """,
        ),
        _count_check(
            engine,
            "damage:resolved_without_timestamp",
            "SELECT COUNT(*) FROM ToolDamageRecords WHERE Resolved = 1 AND ResolvedAt IS NULL",
        ),
        _count_check(
            engine,
            "tools:negative_total",
            "SELECT COUNT(*) FROM Tools WHERE TotalQuantity < 0",
        ),
    ]


def _run_conservation_checks(engine: Engine) -> list[CheckResult]:
    results: list[CheckResult] = []
    for tool_id, name, total, in_use, damaged in _rows(engine, CONSERVATION_SQL):
        available = int(total or 0) - int(in_use) - int(damaged)
        results.append(
            CheckResult(
                f"conservation:{tool_id}",
                available >= 0,
                f"{name} total={int(total or 0)} in_use={int(in_use)} damaged={int(damaged)} available={available}",
            )
        )
    return results


def _print_results(title: str, rows: Iterable[CheckResult]) -> bool:
    _print_section(title)
    ok = True
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        ok = ok and row.ok
        print(f"[{status}] {row.name} :: {row.detail}")
    return ok


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    present = set(inspect(engine).get_table_names())
    for table in EXPECTED_TABLES:
        if table not in present:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Tool ledger overview and conservation check")
    parser.add_argument("--db-url", default=os.environ.get("TOOL_LEDGER_DB_URL", ""))
    parser.add_argument("--skip-counts", action="store_true", help="Only run the checks")
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("TOOL_LEDGER_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    schema_ok = _print_results("Table Existence", _run_existence_checks(engine))
    schema_ok = _print_results("Column Checks", _run_column_checks(engine)) and schema_ok
    if not schema_ok:
        return 1
    ok = _print_results("Integrity Checks", _run_integrity_checks(engine))
    ok = _print_results("Conservation", _run_conservation_checks(engine)) and ok
    if not args.skip_counts:
        _print_row_counts(engine)
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
