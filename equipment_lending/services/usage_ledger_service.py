from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.lending_models import Equipment, UsageRecord
from services.lending_errors import NotFound

OPERATION_BORROW = "borrow"
OPERATION_WITHDRAW = "withdraw"

STATE_ACTIVE = "active"
STATE_RETURNED = "returned"
STATE_COMPLETED = "completed"

DEFAULT_USER_NAME = "Unknown user"

def append_usage_record(
    db: Session,
    equipment: Equipment,
    *,
    operation: str,
    user_id: str,
    user_name: str | None,
    quantity: int,
    purpose: str | None = None,
    job_reference: str | None = None,
    expected_return_time: datetime | None = None,
) -> UsageRecord:
    """Stage a ledger row in the caller's transaction; the caller commits."""
    now = datetime.now()
    record = UsageRecord(
        EquipmentID=equipment.EquipmentID,
        EquipmentName=equipment.EquipmentName,
        EquipmentCode=equipment.Code or "",
        EquipmentCategory=equipment.Category or "",
        EquipmentLocation=equipment.Location or "",
        Unit=equipment.Unit or "",
        UserID=user_id,
        UserName=user_name or DEFAULT_USER_NAME,
        Operation=operation,
        State=STATE_ACTIVE if operation == OPERATION_BORROW else STATE_COMPLETED,
        Quantity=quantity,
        Purpose=purpose or "",
        JobReference=(job_reference or "") if operation == OPERATION_WITHDRAW else None,
        ExpectedReturnTime=expected_return_time if operation == OPERATION_BORROW else None,
        CreatedTime=now,
        UpdatedTime=now,
    )
    db.add(record)
    db.flush()
    return record

def mark_returned(record: UsageRecord, return_quantity: int, note: str | None) -> None:
    now = datetime.now()
    record.State = STATE_RETURNED
    record.ReturnedTime = now
    record.ReturnQuantity = return_quantity
    record.ReturnNote = note or ""
    record.UpdatedTime = now

def get_usage_record_or_404(db: Session, usage_id: int, for_update: bool = False) -> UsageRecord:
    stmt = select(UsageRecord).where(UsageRecord.UsageID == usage_id)
    if for_update:
        # Re-read under the lock even if the session already holds this row.
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    record = db.execute(stmt).scalars().first()
    if not record:
        raise NotFound("Usage record not found.")
    return record

def list_active_loans(db: Session, user_id: str | None = None) -> list[UsageRecord]:
    stmt = (
        select(UsageRecord)
        .where(UsageRecord.Operation == OPERATION_BORROW)
        .where(UsageRecord.State == STATE_ACTIVE)
    )
    if user_id is not None:
        stmt = stmt.where(UsageRecord.UserID == user_id)
    stmt = stmt.order_by(UsageRecord.CreatedTime.desc(), UsageRecord.UsageID.desc())
    return list(db.execute(stmt).scalars().all())

def list_usage_history(
    db: Session,
    user_id: str | None = None,
    equipment_id: int | None = None,
    limit: int = 200,
) -> list[UsageRecord]:
    stmt = select(UsageRecord)
    if user_id is not None:
        stmt = stmt.where(UsageRecord.UserID == user_id)
    if equipment_id is not None:
        stmt = stmt.where(UsageRecord.EquipmentID == equipment_id)
    stmt = stmt.order_by(UsageRecord.CreatedTime.desc(), UsageRecord.UsageID.desc()).limit(limit)
    return list(db.execute(stmt).scalars().all())

def serialize_usage_record(record: UsageRecord) -> dict:
    payload = {
        "id": record.UsageID,
        "equipmentId": record.EquipmentID,
        "equipmentName": record.EquipmentName,
        "equipmentCode": record.EquipmentCode,
        "equipmentCategory": record.EquipmentCategory,
        "equipmentLocation": record.EquipmentLocation,
        "unit": record.Unit,
        "userId": record.UserID,
        "userName": record.UserName,
        "type": record.Operation,
        "status": record.State,
        "quantity": record.Quantity,
        "purpose": record.Purpose,
        "createdAt": record.CreatedTime,
        "updatedAt": record.UpdatedTime,
    }
    if record.Operation == OPERATION_BORROW:
        payload.update(
            {
                "borrowTime": record.CreatedTime,
                "expectedReturnDate": record.ExpectedReturnTime,
                "returnTime": record.ReturnedTime,
                "returnQuantity": record.ReturnQuantity,
                "returnNote": record.ReturnNote,
            }
        )
    else:
        payload.update(
            {
                "withdrawTime": record.CreatedTime,
                "jobReference": record.JobReference,
            }
        )
    return payload
