#!/usr/bin/env python3
"""Stock overview and loan consistency checks for the equipment lending store."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import case, create_engine, func, select
from sqlalchemy.orm import Session

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from models.lending_models import Equipment, UsageRecord
from services.active_loan_service import build_active_loan_groups
from services.equipment_service import KIND_BORROWABLE, KIND_CONSUMABLE, STATUS_LOW_STOCK, STATUS_OUT_OF_STOCK
from services.usage_ledger_service import OPERATION_BORROW, STATE_ACTIVE, list_active_loans, serialize_usage_record


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _outstanding_by_equipment(db: Session) -> dict[int, int]:
    # Partial returns close the record, so the unreturned remainder still counts as lent.
    held = case(
        (UsageRecord.State == STATE_ACTIVE, UsageRecord.Quantity),
        else_=UsageRecord.Quantity - func.coalesce(UsageRecord.ReturnQuantity, UsageRecord.Quantity),
    )
    rows = db.execute(
        select(UsageRecord.EquipmentID, func.coalesce(func.sum(held), 0))
        .where(UsageRecord.Operation == OPERATION_BORROW)
        .group_by(UsageRecord.EquipmentID)
    ).all()
    return {int(equipment_id): int(total) for equipment_id, total in rows}


def run_checks(db: Session) -> list[CheckResult]:
    results: list[CheckResult] = []
    outstanding = _outstanding_by_equipment(db)
    for equipment in db.execute(select(Equipment).order_by(Equipment.EquipmentID)).scalars():
        label = f"#{equipment.EquipmentID} {equipment.EquipmentName}"
        total = int(equipment.TotalQuantity or 0)
        available = int(equipment.AvailableQuantity or 0)

        bounds_ok = 0 <= available <= total
        results.append(CheckResult(f"{label} bounds", bounds_ok, f"available={available} total={total}"))

        if equipment.Kind == KIND_CONSUMABLE:
            results.append(
                CheckResult(f"{label} consumable counters", available == total, f"available={available} total={total}")
            )
        elif equipment.Kind == KIND_BORROWABLE:
            # Admin resizes can floor available at 0, so outstanding may exceed the in-use delta.
            lent = outstanding.get(equipment.EquipmentID, 0)
            results.append(
                CheckResult(f"{label} loans", total - available <= lent, f"in_use={total - available} held={lent}")
            )
    return results


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Print stock levels, active loans and consistency checks.")
    parser.add_argument(
        "--db-url",
        default=os.environ.get("EQUIPMENT_LENDING_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to EQUIPMENT_LENDING_DB_URL env var.",
    )
    parser.add_argument("--only-failures", action="store_true", help="Print only failed checks.")
    return parser


def main() -> int:
    args = _build_parser().parse_args()
    if not args.db_url:
        print("Missing --db-url (or EQUIPMENT_LENDING_DB_URL).", file=sys.stderr)
        return 2

    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    with Session(engine) as db:
        _print_section("Stock")
        for equipment in db.execute(select(Equipment).order_by(Equipment.EquipmentName)).scalars():
            marker = " !" if equipment.Status in {STATUS_LOW_STOCK, STATUS_OUT_OF_STOCK} else ""
            print(
                f"{equipment.EquipmentID:>5}  {equipment.EquipmentName:<30} {equipment.Kind:<10} "
                f"{equipment.AvailableQuantity}/{equipment.TotalQuantity} {equipment.Unit or ''}  {equipment.Status}{marker}"
            )

        _print_section("Active loans by user")
        groups = build_active_loan_groups(serialize_usage_record(record) for record in list_active_loans(db))
        if not groups:
            print("(none)")
        for group in groups:
            print(f"{group['userName']} ({group['userId']}) last={group['lastActiveTime']} items={len(group['items'])}")
            for item in group["items"]:
                print(f"    #{item['id']} {item['equipmentName']} x{item['quantity']} since {item['borrowTime']}")

        _print_section("Checks")
        results = run_checks(db)
        failures = [result for result in results if not result.ok]
        for result in results:
            if args.only_failures and result.ok:
                continue
            print(f"[{'OK' if result.ok else 'FAIL'}] {result.name}: {result.detail}")
        print(f"\n{len(results) - len(failures)}/{len(results)} checks passed")
    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
