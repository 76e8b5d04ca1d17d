"""Borrow, withdraw and return against the equipment pool.

Every operation runs its read-check-write sequence for one equipment id as a
single transaction while holding that id's process lock, and reads the
equipment row with SELECT ... FOR UPDATE so that several worker processes on
a server database are serialized by the database as well. The ledger row and
the equipment update are committed together or not at all.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.lending_models import AuditLog, Equipment, UsageRecord
from services.active_loan_service import CHANGE_ADDED, CHANGE_MODIFIED, UsageChange, usage_change_feed
from services.equipment_service import (
    KIND_BORROWABLE,
    KIND_CONSUMABLE,
    STATUS_AVAILABLE,
    STATUS_LOW_STOCK,
    STATUS_OUT_OF_STOCK,
    get_equipment_or_404,
)
from services.lending_errors import (
    AlreadyReturned,
    InsufficientStock,
    NotFound,
    OverReturn,
    StoreUnavailable,
    WrongKind,
    WrongOperation,
    require_positive_quantity,
)
from services.notification_service import (
    NOTIFY_BORROW,
    NOTIFY_LOW_STOCK,
    NOTIFY_OUT_OF_STOCK,
    NOTIFY_RETURN,
    NOTIFY_WITHDRAW,
    deliver_usage_notifications,
    dispatch_usage_notification,
)
from services.store_transaction import equipment_lock, run_atomic
from services.usage_ledger_service import (
    OPERATION_BORROW,
    OPERATION_WITHDRAW,
    STATE_ACTIVE,
    append_usage_record,
    get_usage_record_or_404,
    mark_returned,
    serialize_usage_record,
)

LOGGER = logging.getLogger("equipment_lending.reservations")

Scheduler = Callable[..., Any]


def _audit(db: Session, record: UsageRecord, action: str, details: str) -> None:
    db.add(
        AuditLog(
            EntityType="UsageRecord",
            EntityID=record.UsageID,
            Action=action,
            Details=details,
            UserID=record.UserID,
            CreatedAt=datetime.now(),
        )
    )


def _shortage_message(equipment: Equipment, available: int) -> str:
    unit = f" {equipment.Unit}" if equipment.Unit else ""
    return f"Not enough stock (available {available}{unit})."


def _stock_event(equipment: Equipment, previous_status: str) -> dict | None:
    if equipment.Status == previous_status:
        return None
    if equipment.Status == STATUS_OUT_OF_STOCK:
        operation = NOTIFY_OUT_OF_STOCK
    elif equipment.Status == STATUS_LOW_STOCK:
        operation = NOTIFY_LOW_STOCK
    else:
        return None
    return {
        "operation": operation,
        "equipmentId": equipment.EquipmentID,
        "equipmentName": equipment.EquipmentName,
        "remainingQuantity": equipment.TotalQuantity if equipment.Kind == KIND_CONSUMABLE else equipment.AvailableQuantity,
        "unit": equipment.Unit,
    }


def _usage_event(operation: str, record: UsageRecord, quantity: int, note: str | None = None) -> dict:
    return {
        "operation": operation,
        "usageId": record.UsageID,
        "equipmentId": record.EquipmentID,
        "equipmentName": record.EquipmentName,
        "userId": record.UserID,
        "userName": record.UserName,
        "quantity": quantity,
        "unit": record.Unit,
        "note": note,
    }


def _after_commit(
    db: Session,
    change_kind: str,
    record: UsageRecord,
    events: list[dict | None],
    schedule: Scheduler | None = None,
) -> None:
    usage_change_feed.publish([UsageChange(change_kind, serialize_usage_record(record))])
    events = [event for event in events if event]
    if schedule is not None:
        # Delivery runs after the response on its own session.
        schedule(deliver_usage_notifications, events)
        return
    for event in events:
        dispatch_usage_notification(db, event)


def borrow_equipment(
    db: Session,
    equipment_id: int,
    user_id: str,
    quantity,
    user_name: str | None = None,
    purpose: str | None = None,
    expected_return_time: datetime | None = None,
    schedule: Scheduler | None = None,
) -> dict:
    quantity = require_positive_quantity(quantity)

    def apply() -> tuple[UsageRecord, Equipment, str]:
        equipment = get_equipment_or_404(db, equipment_id, for_update=True)
        if equipment.Kind != KIND_BORROWABLE:
            raise WrongKind("This item is consumable and cannot be borrowed; use withdraw instead.")
        available = int(equipment.AvailableQuantity or 0)
        if available < quantity:
            raise InsufficientStock(_shortage_message(equipment, available))

        previous_status = equipment.Status
        equipment.AvailableQuantity = available - quantity
        if equipment.AvailableQuantity == 0:
            equipment.Status = STATUS_OUT_OF_STOCK
        equipment.UpdatedDate = datetime.now()

        record = append_usage_record(
            db,
            equipment,
            operation=OPERATION_BORROW,
            user_id=user_id,
            user_name=user_name,
            quantity=quantity,
            purpose=purpose,
            expected_return_time=expected_return_time,
        )
        _audit(db, record, "Borrow", f"Borrowed {quantity} of equipment {equipment.EquipmentID}")
        return record, equipment, previous_status

    with equipment_lock(equipment_id):
        record, equipment, previous_status = run_atomic(db, "borrow", apply)

    LOGGER.info(
        "Borrow usage_id=%s equipment_id=%s user_id=%s quantity=%s available=%s",
        record.UsageID,
        equipment.EquipmentID,
        user_id,
        quantity,
        equipment.AvailableQuantity,
    )
    _after_commit(
        db,
        CHANGE_ADDED,
        record,
        [_usage_event(NOTIFY_BORROW, record, quantity), _stock_event(equipment, previous_status)],
        schedule,
    )
    return {
        "usageId": record.UsageID,
        "availableQuantity": equipment.AvailableQuantity,
        "status": equipment.Status,
    }


def withdraw_equipment(
    db: Session,
    equipment_id: int,
    user_id: str,
    quantity,
    user_name: str | None = None,
    purpose: str | None = None,
    job_reference: str | None = None,
    schedule: Scheduler | None = None,
) -> dict:
    quantity = require_positive_quantity(quantity)

    def apply() -> tuple[UsageRecord, Equipment, str]:
        equipment = get_equipment_or_404(db, equipment_id, for_update=True)
        if equipment.Kind != KIND_CONSUMABLE:
            raise WrongKind("This item must be borrowed and returned; use borrow instead.")
        available = int(equipment.AvailableQuantity or 0)
        if available < quantity:
            raise InsufficientStock(_shortage_message(equipment, available))

        previous_status = equipment.Status
        # Consumables never come back, so both counters move together.
        new_total = int(equipment.TotalQuantity or 0) - quantity
        equipment.TotalQuantity = new_total
        equipment.AvailableQuantity = available - quantity
        if new_total <= 0:
            equipment.Status = STATUS_OUT_OF_STOCK
        elif new_total <= int(equipment.MinStock or 0):
            equipment.Status = STATUS_LOW_STOCK
        equipment.UpdatedDate = datetime.now()

        record = append_usage_record(
            db,
            equipment,
            operation=OPERATION_WITHDRAW,
            user_id=user_id,
            user_name=user_name,
            quantity=quantity,
            purpose=purpose,
            job_reference=job_reference,
        )
        _audit(db, record, "Withdraw", f"Withdrew {quantity} of equipment {equipment.EquipmentID}")
        return record, equipment, previous_status

    with equipment_lock(equipment_id):
        record, equipment, previous_status = run_atomic(db, "withdraw", apply)

    LOGGER.info(
        "Withdraw usage_id=%s equipment_id=%s user_id=%s quantity=%s remaining=%s",
        record.UsageID,
        equipment.EquipmentID,
        user_id,
        quantity,
        equipment.TotalQuantity,
    )
    _after_commit(
        db,
        CHANGE_ADDED,
        record,
        [_usage_event(NOTIFY_WITHDRAW, record, quantity), _stock_event(equipment, previous_status)],
        schedule,
    )
    return {
        "usageId": record.UsageID,
        "remainingQuantity": equipment.TotalQuantity,
        "status": equipment.Status,
    }


def return_equipment(
    db: Session,
    usage_id: int,
    return_quantity=None,
    note: str | None = None,
    schedule: Scheduler | None = None,
) -> dict:
    try:
        equipment_id = db.execute(
            select(UsageRecord.EquipmentID).where(UsageRecord.UsageID == usage_id)
        ).scalar()
        # Release the read transaction before queueing on the equipment lock.
        db.rollback()
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreUnavailable("The equipment store is unavailable.") from exc
    if equipment_id is None:
        raise NotFound("Usage record not found.")

    def apply() -> tuple[UsageRecord, Equipment | None, int]:
        record = get_usage_record_or_404(db, usage_id, for_update=True)
        if record.Operation != OPERATION_BORROW:
            raise WrongOperation("This record is a withdrawal and cannot be returned.")
        if record.State != STATE_ACTIVE:
            raise AlreadyReturned("This loan has already been returned.")

        quantity = record.Quantity if return_quantity is None else return_quantity
        if not isinstance(quantity, bool) and isinstance(quantity, int) and quantity > record.Quantity:
            raise OverReturn("Return quantity exceeds the borrowed quantity.")
        quantity = require_positive_quantity(quantity, "returnQuantity")

        try:
            equipment = get_equipment_or_404(db, record.EquipmentID, for_update=True)
        except NotFound:
            equipment = None
            LOGGER.warning(
                "Return for usage_id=%s references missing equipment_id=%s; closing record only",
                usage_id,
                record.EquipmentID,
            )

        if equipment is not None:
            total = int(equipment.TotalQuantity or 0)
            equipment.AvailableQuantity = min(total, int(equipment.AvailableQuantity or 0) + quantity)
            if equipment.Status == STATUS_OUT_OF_STOCK and equipment.AvailableQuantity > 0:
                equipment.Status = STATUS_AVAILABLE
            equipment.UpdatedDate = datetime.now()

        mark_returned(record, quantity, note)
        _audit(db, record, "Return", f"Returned {quantity} of equipment {record.EquipmentID}")
        return record, equipment, quantity

    with equipment_lock(equipment_id):
        record, equipment, quantity = run_atomic(db, "return", apply)

    LOGGER.info(
        "Return usage_id=%s equipment_id=%s user_id=%s quantity=%s available=%s",
        record.UsageID,
        record.EquipmentID,
        record.UserID,
        quantity,
        equipment.AvailableQuantity if equipment is not None else None,
    )
    _after_commit(db, CHANGE_MODIFIED, record, [_usage_event(NOTIFY_RETURN, record, quantity, note)], schedule)
    return {
        "usageId": record.UsageID,
        "returnQuantity": quantity,
        "availableQuantity": equipment.AvailableQuantity if equipment is not None else None,
    }
