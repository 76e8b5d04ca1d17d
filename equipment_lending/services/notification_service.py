from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from datetime import datetime

from sqlalchemy.orm import Session

from db.session import SessionLocalLending
from models.lending_models import NotificationQueue

LOGGER = logging.getLogger("equipment_lending.notifications")

NOTIFY_BORROW = "Borrow"
NOTIFY_WITHDRAW = "Withdraw"
NOTIFY_RETURN = "Return"
NOTIFY_LOW_STOCK = "LowStock"
NOTIFY_OUT_OF_STOCK = "OutOfStock"

_DEFAULT_LINE_API_BASE_URL = "https://api.line.me"


class LinePushError(RuntimeError):
    pass


def format_notification_text(event: dict) -> str:
    notification_type = event.get("operation")
    equipment = event.get("equipmentName") or f"Equipment {event.get('equipmentId')}"
    quantity = f"{event.get('quantity') or 0} {event.get('unit') or ''}".strip()
    user = event.get("userName") or event.get("userId") or "-"

    if notification_type == NOTIFY_BORROW:
        lines = ["Equipment borrowed", f"Item: {equipment}", f"Quantity: {quantity}", f"Borrower: {user}"]
    elif notification_type == NOTIFY_WITHDRAW:
        lines = ["Equipment withdrawn", f"Item: {equipment}", f"Quantity: {quantity}", f"Requested by: {user}"]
    elif notification_type == NOTIFY_RETURN:
        lines = ["Equipment returned", f"Item: {equipment}", f"Quantity: {quantity}", f"Returned by: {user}"]
    elif notification_type == NOTIFY_LOW_STOCK:
        lines = ["Low stock", f"Item: {equipment}", f"Remaining: {event.get('remainingQuantity')}"]
    elif notification_type == NOTIFY_OUT_OF_STOCK:
        lines = ["Out of stock", f"Item: {equipment}"]
    else:
        lines = [str(notification_type or "Notification"), f"Item: {equipment}"]

    if event.get("note"):
        lines.append(f"Note: {event['note']}")
    return "\n".join(lines)


def _line_settings() -> tuple[str, str, str] | None:
    token = (os.environ.get("LINE_CHANNEL_ACCESS_TOKEN") or "").strip()
    target = (os.environ.get("LINE_NOTIFY_TARGET_ID") or "").strip()
    if not token or not target:
        return None
    base_url = (os.environ.get("LINE_API_BASE_URL") or _DEFAULT_LINE_API_BASE_URL).strip().rstrip("/")
    return token, target, base_url


def push_line_message(text: str) -> bool:
    """Push a text message to the configured LINE target. Returns False when LINE is not configured."""
    settings = _line_settings()
    if not settings:
        return False
    token, target, base_url = settings
    body = json.dumps({"to": target, "messages": [{"type": "text", "text": text}]}).encode("utf-8")
    request = urllib.request.Request(
        url=f"{base_url}/v2/bot/message/push",
        data=body,
        headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=10) as response:
            if response.status != 200:
                raise LinePushError(f"LINE API returned status {response.status}")
    except urllib.error.HTTPError as exc:
        raise LinePushError(f"LINE API HTTP error: {exc.code}") from exc
    except urllib.error.URLError as exc:
        raise LinePushError(f"LINE API connection error: {exc.reason}") from exc
    return True


def dispatch_usage_notification(db: Session, event: dict) -> None:
    """Queue and push a notification after a committed reservation. Never raises."""
    try:
        notification = NotificationQueue(
            UsageID=event.get("usageId"),
            EquipmentID=event.get("equipmentId"),
            NotificationType=str(event.get("operation")),
            Payload=json.dumps(event, default=str)[:2000],
            CreatedAt=datetime.now(),
        )
        db.add(notification)
        db.commit()
        if push_line_message(format_notification_text(event)):
            notification.SentAt = datetime.now()
            db.commit()
    except Exception:
        db.rollback()
        LOGGER.exception(
            "Notification dispatch failed operation=%s equipment_id=%s",
            event.get("operation"),
            event.get("equipmentId"),
        )


def deliver_usage_notifications(events: list[dict]) -> None:
    """Background entry point: dispatch events on a session of its own."""
    with SessionLocalLending() as db:
        for event in events:
            dispatch_usage_notification(db, event)
