import os
import sys
import tempfile
import unittest
from pathlib import Path

from fastapi.testclient import TestClient


os.environ.setdefault(
    "EQUIPMENT_LENDING_DB_URL",
    f"sqlite+pysqlite:///{Path(tempfile.gettempdir()) / f'equipment_lending_test_{os.getpid()}.db'}",
)
os.environ.pop("LINE_CHANNEL_ACCESS_TOKEN", None)

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import LendingDesk as app_module
from db.base import Base
from db.session import engine_lending
from services.active_loan_service import active_loan_view


class LendingApiTests(unittest.TestCase):
    def setUp(self):
        Base.metadata.drop_all(engine_lending)
        Base.metadata.create_all(engine_lending)
        active_loan_view.reset()
        self.client = TestClient(app_module.app)

    def _add(self, name, kind, quantity, **extra):
        response = self.client.post("/api/equipment", json={"name": name, "type": kind, "quantity": quantity, **extra})
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()["id"]

    def _borrow(self, equipment_id, user_id, quantity=1):
        return self.client.post(
            "/api/equipment-usage/borrow",
            json={"equipmentId": equipment_id, "userId": user_id, "userName": user_id.title(), "quantity": quantity},
        )

    def test_healthz(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.assertEqual(self.client.get("/api/healthz").json(), {"status": "ok"})

    def test_borrow_and_return_flow(self):
        drill = self._add("Drill", "borrowable", 5)

        borrowed = self._borrow(drill, "u1", 2)
        self.assertEqual(borrowed.status_code, 200)
        usage_id = borrowed.json()["usageId"]
        self.assertEqual(self.client.get(f"/api/equipment/{drill}").json()["availableQuantity"], 3)

        active = self.client.get("/api/equipment-usage/active", params={"userId": "u1"}).json()["activeUsages"]
        self.assertEqual([usage["id"] for usage in active], [usage_id])
        self.assertEqual(active[0]["equipmentName"], "Drill")

        returned = self.client.post("/api/equipment-usage/return", json={"usageId": usage_id, "note": "ok"})
        self.assertEqual(returned.status_code, 200)
        self.assertEqual(returned.json()["returnQuantity"], 2)
        self.assertEqual(self.client.get(f"/api/equipment/{drill}").json()["availableQuantity"], 5)

        again = self.client.post("/api/equipment-usage/return", json={"usageId": usage_id})
        self.assertEqual(again.status_code, 400)
        self.assertEqual(again.json()["kind"], "AlreadyReturned")

    def test_withdraw_flow(self):
        tape = self._add("Tape", "consumable", 10, minStock=2)

        response = self.client.post(
            "/api/equipment-usage/withdraw",
            json={"equipmentId": tape, "userId": "u1", "quantity": 8, "jobReference": "JOB-7"},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["remainingQuantity"], 2)
        item = self.client.get(f"/api/equipment/{tape}").json()
        self.assertEqual((item["quantity"], item["availableQuantity"], item["status"]), (2, 2, "low_stock"))

        history = self.client.get("/api/equipment-usage/history", params={"userId": "u1"}).json()["history"]
        self.assertEqual(history[0]["type"], "withdraw")
        self.assertEqual(history[0]["jobReference"], "JOB-7")

        not_returnable = self.client.post("/api/equipment-usage/return", json={"usageId": response.json()["usageId"]})
        self.assertEqual(not_returnable.json()["kind"], "WrongOperation")

    def test_error_kinds(self):
        drill = self._add("Drill", "borrowable", 1)
        tape = self._add("Tape", "consumable", 3)

        missing = self._borrow(999, "u1")
        self.assertEqual((missing.status_code, missing.json()["kind"]), (404, "NotFound"))

        zero = self._borrow(drill, "u1", 0)
        self.assertEqual((zero.status_code, zero.json()["kind"]), (400, "InvalidQuantity"))

        fractional = self._borrow(drill, "u1", 1.5)
        self.assertEqual((fractional.status_code, fractional.json()["kind"]), (400, "InvalidQuantity"))

        no_user = self.client.post("/api/equipment-usage/borrow", json={"equipmentId": drill, "quantity": 1})
        self.assertEqual((no_user.status_code, no_user.json()["kind"]), (400, "InvalidRequest"))

        wrong_kind = self._borrow(tape, "u1")
        self.assertEqual(wrong_kind.json()["kind"], "WrongKind")

        short = self._borrow(drill, "u1", 2)
        self.assertEqual(short.json()["kind"], "InsufficientStock")

        usage_id = self._borrow(drill, "u1").json()["usageId"]
        over = self.client.post("/api/equipment-usage/return", json={"usageId": usage_id, "returnQuantity": 2})
        self.assertEqual(over.json()["kind"], "OverReturn")
        self.assertEqual(self.client.get(f"/api/equipment/{drill}").json()["availableQuantity"], 0)

    def test_resize_and_stock_history(self):
        drill = self._add("Drill", "borrowable", 5)
        self._borrow(drill, "u1", 3)

        response = self.client.put(f"/api/equipment/{drill}", json={"quantity": 8, "note": "restock"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["equipment"]["availableQuantity"], 5)
        history = self.client.get("/api/stock-history", params={"equipmentId": drill}).json()["history"]
        self.assertEqual(len(history), 1)
        self.assertEqual((history[0]["previousQuantity"], history[0]["newQuantity"]), (5, 8))
        self.assertEqual(history[0]["note"], "restock")

        wrong = self.client.put(f"/api/equipment/{drill}", json={"type": "consumable"})
        self.assertEqual(wrong.json()["kind"], "WrongKind")

    def test_delete_then_not_found(self):
        drill = self._add("Drill", "borrowable", 1)

        self.assertEqual(self.client.delete(f"/api/equipment/{drill}").status_code, 200)

        response = self.client.get(f"/api/equipment/{drill}")
        self.assertEqual((response.status_code, response.json()["kind"]), (404, "NotFound"))

    def test_equipment_list_filters(self):
        self._add("Drill", "borrowable", 1)
        self._add("Tape", "consumable", 4)

        everything = self.client.get("/api/equipment").json()["equipment"]
        consumables = self.client.get("/api/equipment", params={"type": "consumable"}).json()["equipment"]

        self.assertEqual([item["name"] for item in everything], ["Drill", "Tape"])
        self.assertEqual([item["name"] for item in consumables], ["Tape"])

    def test_active_groups(self):
        drill = self._add("Drill", "borrowable", 5)
        self._borrow(drill, "zed", 1)
        self._borrow(drill, "amy", 2)
        self._borrow(drill, "zed", 1)

        live = self.client.get("/api/equipment-usage/active-groups").json()["groups"]
        refreshed = self.client.get("/api/equipment-usage/active-groups", params={"forceRefresh": "true"}).json()["groups"]

        self.assertEqual([group["userId"] for group in live], ["zed", "amy"])
        self.assertEqual([group["totalQuantity"] for group in live], [2, 2])
        self.assertEqual(refreshed, live)

    def test_equipment_history(self):
        drill = self._add("Drill", "borrowable", 5)
        self._borrow(drill, "u1")
        self._borrow(drill, "u2")

        history = self.client.get(f"/api/equipment/{drill}/history").json()["history"]

        self.assertEqual([entry["userId"] for entry in history], ["u2", "u1"])

    def test_pending_notifications_are_queued(self):
        drill = self._add("Drill", "borrowable", 2)
        self._borrow(drill, "u1")

        pending = self.client.get("/api/notifications/pending").json()

        self.assertEqual([item["type"] for item in pending], ["Borrow"])


if __name__ == "__main__":
    unittest.main()
