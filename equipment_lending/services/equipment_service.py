from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.lending_models import Equipment, StockAdjustment
from services.lending_errors import NotFound, WrongKind, require_non_negative_quantity
from services.store_transaction import equipment_lock, run_atomic

KIND_BORROWABLE = "borrowable"
KIND_CONSUMABLE = "consumable"
EQUIPMENT_KINDS = {KIND_BORROWABLE, KIND_CONSUMABLE}

STATUS_AVAILABLE = "available"
STATUS_LOW_STOCK = "low_stock"
STATUS_OUT_OF_STOCK = "out_of_stock"
STATUS_IN_USE = "in_use"
STATUS_MAINTENANCE = "maintenance"
DERIVED_STATUSES = {STATUS_AVAILABLE, STATUS_LOW_STOCK, STATUS_OUT_OF_STOCK}
EXTERNAL_STATUSES = {STATUS_IN_USE, STATUS_MAINTENANCE}

DEFAULT_CATEGORY = "General"
DEFAULT_UNIT = "pcs"
CODE_PREFIX = "EQ-"


def _parse_seq(code: str) -> Optional[int]:
    parts = code.split("-")
    if len(parts) != 2:
        return None
    try:
        return int(parts[1])
    except ValueError:
        return None


def generate_next_equipment_code(db: Session) -> str:
    existing = db.execute(
        select(Equipment.Code).where(Equipment.Code.startswith(CODE_PREFIX))
    ).scalars().all()

    max_seq = 0
    for code in existing:
        if not code:
            continue
        seq = _parse_seq(code)
        if seq and seq > max_seq:
            max_seq = seq
    return f"{CODE_PREFIX}{max_seq + 1:04d}"


def derive_status(equipment: Equipment) -> str:
    """Status implied by the quantities alone, ignoring externally set states."""
    if equipment.Kind == KIND_CONSUMABLE:
        total = int(equipment.TotalQuantity or 0)
        if total <= 0:
            return STATUS_OUT_OF_STOCK
        if total <= int(equipment.MinStock or 0):
            return STATUS_LOW_STOCK
        return STATUS_AVAILABLE
    if int(equipment.AvailableQuantity or 0) <= 0:
        return STATUS_OUT_OF_STOCK
    return STATUS_AVAILABLE


def get_equipment_or_404(db: Session, equipment_id: int, for_update: bool = False) -> Equipment:
    if for_update:
        equipment = db.execute(
            select(Equipment)
            .where(Equipment.EquipmentID == equipment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().first()
    else:
        equipment = db.get(Equipment, equipment_id)
    if not equipment:
        raise NotFound("Equipment not found.")
    return equipment


def list_equipment(
    db: Session,
    kind: str | None = None,
    status: str | None = None,
    category: str | None = None,
) -> list[Equipment]:
    stmt = select(Equipment)
    if kind and kind != "all":
        stmt = stmt.where(Equipment.Kind == kind)
    if status and status != "all":
        stmt = stmt.where(Equipment.Status == status)
    if category and category != "all":
        stmt = stmt.where(Equipment.Category == category)
    return list(db.execute(stmt.order_by(Equipment.EquipmentName, Equipment.EquipmentID)).scalars().all())


def create_equipment(db: Session, fields: dict) -> Equipment:
    kind = fields.get("kind")
    if kind not in EQUIPMENT_KINDS:
        raise WrongKind("kind must be borrowable or consumable.")

    quantity = fields.get("quantity")
    total = require_non_negative_quantity(1 if quantity is None else quantity, "quantity")
    min_stock = require_non_negative_quantity(fields.get("minStock") or 0, "minStock")

    now = datetime.now()
    equipment = Equipment(
        EquipmentName=fields["name"],
        Code=fields.get("code") or generate_next_equipment_code(db),
        Category=fields.get("category") or DEFAULT_CATEGORY,
        Location=fields.get("location") or "",
        Unit=fields.get("unit") or DEFAULT_UNIT,
        Description=fields.get("description") or "",
        ImageUrl=fields.get("imageUrl") or "",
        Kind=kind,
        TotalQuantity=total,
        AvailableQuantity=total,
        MinStock=min_stock,
        CreatedDate=now,
        UpdatedDate=now,
    )
    equipment.Status = derive_status(equipment)
    db.add(equipment)
    db.commit()
    db.refresh(equipment)
    return equipment


_FIELD_MAP = {
    "name": "EquipmentName",
    "code": "Code",
    "category": "Category",
    "location": "Location",
    "unit": "Unit",
    "description": "Description",
    "imageUrl": "ImageUrl",
    "status": "Status",
}


def update_equipment(db: Session, equipment_id: int, fields: dict, note: str | None = None) -> Equipment:
    """Apply an admin edit.

    A new quantity resizes the pool while keeping outstanding loans intact:
    the available count moves by the same delta as the total, floored at 0.
    """

    def apply() -> Equipment:
        equipment = get_equipment_or_404(db, equipment_id, for_update=True)

        if "kind" in fields and fields["kind"] not in (None, equipment.Kind):
            raise WrongKind("Equipment kind cannot be changed after creation.")

        for field, value in fields.items():
            column = _FIELD_MAP.get(field)
            if column and value is not None:
                setattr(equipment, column, value)

        quantity_changed = False
        if fields.get("minStock") is not None:
            equipment.MinStock = require_non_negative_quantity(fields["minStock"], "minStock")
            quantity_changed = True

        if fields.get("quantity") is not None:
            new_total = require_non_negative_quantity(fields["quantity"], "quantity")
            old_total = int(equipment.TotalQuantity or 0)
            old_available = int(equipment.AvailableQuantity or 0)
            new_available = max(0, old_available + (new_total - old_total))
            if new_total != old_total:
                db.add(
                    StockAdjustment(
                        EquipmentID=equipment.EquipmentID,
                        EquipmentName=equipment.EquipmentName,
                        PreviousTotal=old_total,
                        NewTotal=new_total,
                        PreviousAvailable=old_available,
                        NewAvailable=new_available,
                        Note=note,
                        CreatedTime=datetime.now(),
                    )
                )
            equipment.TotalQuantity = new_total
            equipment.AvailableQuantity = new_available
            quantity_changed = True

        if quantity_changed and equipment.Status in DERIVED_STATUSES:
            equipment.Status = derive_status(equipment)

        equipment.UpdatedDate = datetime.now()
        return equipment

    with equipment_lock(equipment_id):
        equipment = run_atomic(db, "update equipment", apply)
    return equipment


def delete_equipment(db: Session, equipment_id: int) -> None:
    def apply() -> None:
        db.delete(get_equipment_or_404(db, equipment_id, for_update=True))

    with equipment_lock(equipment_id):
        run_atomic(db, "delete equipment", apply)


def list_stock_adjustments(db: Session, equipment_id: int | None = None, limit: int = 100) -> list[StockAdjustment]:
    stmt = select(StockAdjustment)
    if equipment_id is not None:
        stmt = stmt.where(StockAdjustment.EquipmentID == equipment_id)
    stmt = stmt.order_by(StockAdjustment.AdjustmentID.desc()).limit(limit)
    return list(db.execute(stmt).scalars().all())


def serialize_equipment(equipment: Equipment) -> dict:
    return {
        "id": equipment.EquipmentID,
        "name": equipment.EquipmentName,
        "code": equipment.Code,
        "category": equipment.Category,
        "location": equipment.Location,
        "unit": equipment.Unit,
        "description": equipment.Description,
        "imageUrl": equipment.ImageUrl,
        "type": equipment.Kind,
        "quantity": equipment.TotalQuantity,
        "availableQuantity": equipment.AvailableQuantity,
        "minStock": equipment.MinStock,
        "status": equipment.Status,
        "createdAt": equipment.CreatedDate,
        "updatedAt": equipment.UpdatedDate,
    }


def serialize_stock_adjustment(adjustment: StockAdjustment) -> dict:
    return {
        "id": adjustment.AdjustmentID,
        "equipmentId": adjustment.EquipmentID,
        "equipmentName": adjustment.EquipmentName,
        "previousQuantity": adjustment.PreviousTotal,
        "newQuantity": adjustment.NewTotal,
        "previousAvailableQuantity": adjustment.PreviousAvailable,
        "newAvailableQuantity": adjustment.NewAvailable,
        "note": adjustment.Note,
        "createdAt": adjustment.CreatedTime,
    }
