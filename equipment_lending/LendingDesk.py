import logging
import os

from dotenv import load_dotenv
from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

load_dotenv()

from db.base import Base
from db.deps import get_lending_db
from db.session import engine_lending
from models.lending_models import NotificationQueue
from schemas.equipment import EquipmentCreate, EquipmentUpdate
from schemas.usage import BorrowRequest, ReturnRequest, WithdrawRequest
from services.active_loan_service import active_loan_view
from services.equipment_service import (
    create_equipment,
    delete_equipment,
    get_equipment_or_404,
    list_equipment,
    list_stock_adjustments,
    serialize_equipment,
    serialize_stock_adjustment,
    update_equipment,
)
from services.lending_errors import LendingError, StoreUnavailable
from services.reservation_service import borrow_equipment, return_equipment, withdraw_equipment
from services.usage_ledger_service import list_active_loans, list_usage_history, serialize_usage_record

LOGGER = logging.getLogger("equipment_lending.api")

app = FastAPI()


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _parse_bool_env(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:3000,http://localhost:3000",
)
_CORS_ALLOW_CREDENTIALS = _parse_bool_env("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)

if _parse_bool_env("EQUIPMENT_LENDING_CREATE_SCHEMA", "true"):
    Base.metadata.create_all(engine_lending)

_QUANTITY_FIELDS = {"quantity", "returnQuantity", "minStock"}


@app.exception_handler(LendingError)
async def handle_lending_error(request: Request, exc: LendingError):
    if exc.status_code >= 500:
        LOGGER.error("Request failed path=%s kind=%s", request.url.path, exc.kind)
    else:
        LOGGER.warning("Request rejected path=%s kind=%s reason=%s", request.url.path, exc.kind, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(SQLAlchemyError)
async def handle_store_error(request: Request, exc: SQLAlchemyError):
    LOGGER.error("Store failure path=%s error=%s", request.url.path, exc)
    return JSONResponse(status_code=503, content=StoreUnavailable("The equipment store is unavailable.").to_payload())


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    fields = {str(error.get("loc", [""])[-1]) for error in errors}
    kind = "InvalidQuantity" if fields & _QUANTITY_FIELDS else "InvalidRequest"
    message = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', []) if part != 'body')}: {error.get('msg')}"
        for error in errors
    )
    return JSONResponse(status_code=400, content={"error": message or "Invalid request.", "kind": kind})


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_lending_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except SQLAlchemyError as exc:
        raise StoreUnavailable(f"db_unavailable: {exc}") from exc


@app.get("/api/equipment")
def get_equipment(
    kind: str | None = Query(None, alias="type"),
    status: str | None = Query(None),
    category: str | None = Query(None),
    db: Session = Depends(get_lending_db),
):
    items = list_equipment(db, kind=kind, status=status, category=category)
    return {"success": True, "equipment": [serialize_equipment(item) for item in items]}


@app.get("/api/equipment/{equipment_id}")
def get_equipment_item(equipment_id: int, db: Session = Depends(get_lending_db)):
    return serialize_equipment(get_equipment_or_404(db, equipment_id))


@app.post("/api/equipment")
def add_equipment(payload: EquipmentCreate, db: Session = Depends(get_lending_db)):
    fields = payload.model_dump(exclude_unset=True)
    fields["kind"] = fields.pop("type")
    equipment = create_equipment(db, fields)
    LOGGER.info("Equipment created equipment_id=%s kind=%s quantity=%s", equipment.EquipmentID, equipment.Kind, equipment.TotalQuantity)
    return {"success": True, "id": equipment.EquipmentID, "message": "Equipment added.", "equipment": serialize_equipment(equipment)}


@app.put("/api/equipment/{equipment_id}")
def edit_equipment(equipment_id: int, payload: EquipmentUpdate, db: Session = Depends(get_lending_db)):
    fields = payload.model_dump(exclude_unset=True)
    note = fields.pop("note", None)
    if "type" in fields:
        fields["kind"] = fields.pop("type")
    equipment = update_equipment(db, equipment_id, fields, note=note)
    return {"success": True, "message": "Equipment updated.", "equipment": serialize_equipment(equipment)}


@app.delete("/api/equipment/{equipment_id}")
def remove_equipment(equipment_id: int, db: Session = Depends(get_lending_db)):
    delete_equipment(db, equipment_id)
    LOGGER.info("Equipment deleted equipment_id=%s", equipment_id)
    return {"success": True, "message": "Equipment deleted."}


@app.get("/api/equipment/{equipment_id}/history")
def get_equipment_history(
    equipment_id: int,
    limit: int = Query(200, ge=1, le=1000),
    db: Session = Depends(get_lending_db),
):
    records = list_usage_history(db, equipment_id=equipment_id, limit=limit)
    return {"success": True, "history": [serialize_usage_record(record) for record in records]}


@app.get("/api/stock-history")
def get_stock_history(
    equipment_id: int | None = Query(None, alias="equipmentId"),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_lending_db),
):
    rows = list_stock_adjustments(db, equipment_id=equipment_id, limit=limit)
    return {"success": True, "history": [serialize_stock_adjustment(row) for row in rows]}


@app.post("/api/equipment-usage/borrow")
def borrow(payload: BorrowRequest, background_tasks: BackgroundTasks, db: Session = Depends(get_lending_db)):
    result = borrow_equipment(
        db,
        payload.equipmentId,
        payload.userId,
        payload.quantity,
        user_name=payload.userName,
        purpose=payload.purpose,
        expected_return_time=payload.expectedReturnDate,
        schedule=background_tasks.add_task,
    )
    return {"success": True, "usageId": result["usageId"], "message": "Equipment borrowed successfully."}


@app.post("/api/equipment-usage/withdraw")
def withdraw(payload: WithdrawRequest, background_tasks: BackgroundTasks, db: Session = Depends(get_lending_db)):
    result = withdraw_equipment(
        db,
        payload.equipmentId,
        payload.userId,
        payload.quantity,
        user_name=payload.userName,
        purpose=payload.purpose,
        job_reference=payload.jobReference,
        schedule=background_tasks.add_task,
    )
    return {
        "success": True,
        "usageId": result["usageId"],
        "message": "Equipment withdrawn successfully.",
        "remainingQuantity": result["remainingQuantity"],
    }


@app.post("/api/equipment-usage/return")
def return_borrowed(payload: ReturnRequest, background_tasks: BackgroundTasks, db: Session = Depends(get_lending_db)):
    result = return_equipment(
        db,
        payload.usageId,
        payload.returnQuantity,
        payload.note,
        schedule=background_tasks.add_task,
    )
    return {"success": True, "message": "Equipment returned successfully.", "returnQuantity": result["returnQuantity"]}


@app.get("/api/equipment-usage/active")
def get_active_usage(user_id: str = Query(..., alias="userId", min_length=1), db: Session = Depends(get_lending_db)):
    records = list_active_loans(db, user_id=user_id)
    return {"success": True, "activeUsages": [serialize_usage_record(record) for record in records]}


@app.get("/api/equipment-usage/active-groups")
def get_active_loan_groups(
    force_refresh: bool = Query(False, alias="forceRefresh"),
    db: Session = Depends(get_lending_db),
):
    if force_refresh or not active_loan_view.synced:
        since = active_loan_view.checkpoint()
        records = [serialize_usage_record(record) for record in list_active_loans(db)]
        active_loan_view.resync(records, since=since)
    return {"success": True, "groups": active_loan_view.groups()}


@app.get("/api/equipment-usage/history")
def get_usage_history(
    user_id: str = Query(..., alias="userId", min_length=1),
    limit: int = Query(200, ge=1, le=1000),
    db: Session = Depends(get_lending_db),
):
    records = list_usage_history(db, user_id=user_id, limit=limit)
    return {"success": True, "history": [serialize_usage_record(record) for record in records]}


@app.get("/api/notifications/pending")
def get_pending_notifications(db: Session = Depends(get_lending_db)):
    notifications = db.execute(
        select(NotificationQueue).where(NotificationQueue.SentAt.is_(None)).order_by(NotificationQueue.NotificationID)
    ).scalars().all()
    return [
        {
            "notificationID": n.NotificationID,
            "usageID": n.UsageID,
            "equipmentID": n.EquipmentID,
            "type": n.NotificationType,
            "payload": n.Payload,
            "createdAt": n.CreatedAt,
        }
        for n in notifications
    ]
