"""Live per-user view of outstanding borrow records.

The view never applies deltas to groups. Every change batch only updates the
snapshot of known records; the groups of the touched users are then rebuilt
from that snapshot, so duplicated, replayed or reordered notifications settle
on the same result. A store snapshot is merged rather than swapped in, so a
resync never undoes changes that were published after the snapshot was read.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable

from services.usage_ledger_service import OPERATION_BORROW, STATE_ACTIVE

LOGGER = logging.getLogger("equipment_lending.active_loans")

CHANGE_ADDED = "added"
CHANGE_MODIFIED = "modified"
CHANGE_REMOVED = "removed"
CHANGE_KINDS = {CHANGE_ADDED, CHANGE_MODIFIED, CHANGE_REMOVED}


@dataclass(frozen=True)
class UsageChange:
    kind: str
    record: dict


def _is_active_borrow(record: dict) -> bool:
    return record.get("type") == OPERATION_BORROW and record.get("status") == STATE_ACTIVE


def _item_sort_key(record: dict):
    return (record.get("createdAt") or datetime.min, record.get("id") or 0)


def _build_group(user_id: str, records: list[dict]) -> dict:
    items = sorted(records, key=_item_sort_key, reverse=True)
    latest = items[0]
    return {
        "userId": user_id,
        "userName": latest.get("userName"),
        "items": items,
        "lastActiveTime": latest.get("createdAt"),
        "totalQuantity": sum(int(item.get("quantity") or 0) for item in items),
    }


def _order_groups(groups: Iterable[dict]) -> list[dict]:
    # Most recent first, then userId ascending; two stable sorts give both keys.
    ordered = sorted(groups, key=lambda group: group["userId"])
    ordered.sort(key=lambda group: group["lastActiveTime"] or datetime.min, reverse=True)
    return ordered


def build_active_loan_groups(records: Iterable[dict]) -> list[dict]:
    by_user: dict[str, list[dict]] = {}
    for record in records:
        if not _is_active_borrow(record):
            continue
        by_user.setdefault(str(record["userId"]), []).append(record)
    return _order_groups(_build_group(user_id, items) for user_id, items in by_user.items())


def _version(record: dict) -> datetime:
    return record.get("updatedAt") or datetime.min


class ActiveLoanView:
    def __init__(self, closed_limit: int = 10_000) -> None:
        self._lock = threading.Lock()
        self._records: dict[int, dict] = {}
        # Sequence number of the change that last wrote each live record.
        self._record_seq: dict[int, int] = {}
        # usage id -> (terminal version, sequence number), so a stale "active"
        # copy delivered late cannot resurrect a returned loan. Oldest first.
        self._closed: OrderedDict[int, tuple[datetime, int]] = OrderedDict()
        self._closed_limit = closed_limit
        self._groups: dict[str, dict] = {}
        self._seq = 0
        self._resync_seq = 0
        self.synced = False

    def checkpoint(self) -> int:
        """Mark the feed position before reading a snapshot from the store."""
        with self._lock:
            return self._seq

    def reset(self) -> None:
        with self._lock:
            self._records = {}
            self._record_seq = {}
            self._closed = OrderedDict()
            self._groups = {}
            self._resync_seq = self._seq
            self.synced = False

    def resync(self, records: Iterable[dict], since: int | None = None) -> None:
        """Merge a store snapshot into the view.

        ``since`` is the checkpoint taken before the snapshot was read. Changes
        applied after it are newer than the snapshot and win over it; anything
        older is replaced by the snapshot. Without a checkpoint the previous
        resync point is used.
        """
        snapshot = {int(record["id"]): record for record in records if _is_active_borrow(record)}
        with self._lock:
            cutoff = self._resync_seq if since is None else since
            merged: dict[int, dict] = {}
            merged_seq: dict[int, int] = {}
            for usage_id, record in snapshot.items():
                closed = self._closed.get(usage_id)
                if closed is not None and closed[1] > cutoff and closed[0] >= _version(record):
                    continue
                live = self._records.get(usage_id)
                seq = self._record_seq.get(usage_id, 0)
                if live is not None and seq > cutoff and _version(live) > _version(record):
                    merged[usage_id] = live
                    merged_seq[usage_id] = seq
                else:
                    merged[usage_id] = record
            for usage_id, live in self._records.items():
                seq = self._record_seq.get(usage_id, 0)
                if usage_id not in snapshot and seq > cutoff:
                    merged[usage_id] = live
                    merged_seq[usage_id] = seq

            self._records = merged
            self._record_seq = merged_seq
            self._closed = OrderedDict((key, value) for key, value in self._closed.items() if value[1] > cutoff)
            self._groups = {
                group["userId"]: group for group in build_active_loan_groups(self._records.values())
            }
            self._resync_seq = self._seq
            self.synced = True
        LOGGER.info(
            "Active loan view resynced records=%s users=%s tombstones=%s",
            len(self._records),
            len(self._groups),
            len(self._closed),
        )

    def apply_changes(self, changes: Iterable[UsageChange]) -> set[str]:
        affected: set[str] = set()
        with self._lock:
            for change in changes:
                if change.kind not in CHANGE_KINDS:
                    LOGGER.warning("Ignoring usage change with unknown kind=%s", change.kind)
                    continue
                affected.update(self._apply_one(change))
            for user_id in affected:
                self._rebuild_user(user_id)
        return affected

    def _apply_one(self, change: UsageChange) -> set[str]:
        record = change.record
        usage_id = int(record["id"])
        version = _version(record)
        touched = {str(record["userId"])}

        known = self._records.get(usage_id)
        if known is not None:
            touched.add(str(known["userId"]))
            if _version(known) > version:
                return set()

        closed = self._closed.get(usage_id)
        if closed is not None and closed[0] >= version:
            return set()

        self._seq += 1
        if change.kind != CHANGE_REMOVED and _is_active_borrow(record):
            self._records[usage_id] = record
            self._record_seq[usage_id] = self._seq
        else:
            self._records.pop(usage_id, None)
            self._record_seq.pop(usage_id, None)
            self._closed[usage_id] = (version, self._seq)
            self._closed.move_to_end(usage_id)
            while len(self._closed) > self._closed_limit:
                self._closed.popitem(last=False)
        return touched

    def _rebuild_user(self, user_id: str) -> None:
        records = [record for record in self._records.values() if str(record["userId"]) == user_id]
        if records:
            self._groups[user_id] = _build_group(user_id, records)
        else:
            self._groups.pop(user_id, None)

    def groups(self) -> list[dict]:
        with self._lock:
            return _order_groups(self._groups.values())

    def group_for(self, user_id: str) -> dict | None:
        with self._lock:
            return self._groups.get(str(user_id))


class UsageChangeFeed:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[Callable[[list[UsageChange]], None]] = []

    def subscribe(self, callback: Callable[[list[UsageChange]], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, changes: list[UsageChange]) -> None:
        if not changes:
            return
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(changes)
            except Exception:
                LOGGER.exception("Usage change subscriber failed")


usage_change_feed = UsageChangeFeed()
active_loan_view = ActiveLoanView()
usage_change_feed.subscribe(active_loan_view.apply_changes)
