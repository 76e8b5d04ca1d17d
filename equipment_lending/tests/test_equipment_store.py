import os
import sys
import tempfile
import unittest
from pathlib import Path


os.environ.setdefault(
    "EQUIPMENT_LENDING_DB_URL",
    f"sqlite+pysqlite:///{Path(tempfile.gettempdir()) / f'equipment_lending_test_{os.getpid()}.db'}",
)
os.environ.pop("LINE_CHANNEL_ACCESS_TOKEN", None)

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base
from db.session import SessionLocalLending, engine_lending
from scripts.stock_overview import run_checks
from services.active_loan_service import active_loan_view
from services.equipment_service import (
    create_equipment,
    delete_equipment,
    get_equipment_or_404,
    list_equipment,
    list_stock_adjustments,
    serialize_equipment,
    update_equipment,
)
from services.lending_errors import InvalidQuantity, NotFound, WrongKind
from services.reservation_service import borrow_equipment, return_equipment, withdraw_equipment


class EquipmentStoreTests(unittest.TestCase):
    def setUp(self):
        Base.metadata.drop_all(engine_lending)
        Base.metadata.create_all(engine_lending)
        active_loan_view.reset()
        self.db = SessionLocalLending()

    def tearDown(self):
        self.db.close()

    def test_codes_are_sequential(self):
        first = create_equipment(self.db, {"name": "Ladder", "kind": "borrowable"})
        second = create_equipment(self.db, {"name": "Gloves", "kind": "consumable", "quantity": 20})
        manual = create_equipment(self.db, {"name": "Helmet", "kind": "borrowable", "code": "HM-1"})

        self.assertEqual(first.Code, "EQ-0001")
        self.assertEqual(second.Code, "EQ-0002")
        self.assertEqual(manual.Code, "HM-1")
        self.assertEqual(first.TotalQuantity, 1)
        self.assertEqual(first.AvailableQuantity, 1)
        self.assertEqual(first.Category, "General")

    def test_create_rejects_unknown_kind(self):
        with self.assertRaises(WrongKind):
            create_equipment(self.db, {"name": "Thing", "kind": "rental"})

    def test_create_rejects_negative_quantity(self):
        with self.assertRaises(InvalidQuantity):
            create_equipment(self.db, {"name": "Thing", "kind": "borrowable", "quantity": -1})

    def test_grow_keeps_outstanding_loans(self):
        item = create_equipment(self.db, {"name": "Drill", "kind": "borrowable", "quantity": 5})
        borrow_equipment(self.db, item.EquipmentID, "u1", 3)

        updated = update_equipment(self.db, item.EquipmentID, {"quantity": 8}, note="new stock")

        self.assertEqual(updated.TotalQuantity, 8)
        self.assertEqual(updated.AvailableQuantity, 5)
        self.assertEqual(updated.Status, "available")
        adjustments = list_stock_adjustments(self.db, equipment_id=item.EquipmentID)
        self.assertEqual(len(adjustments), 1)
        self.assertEqual(
            (adjustments[0].PreviousTotal, adjustments[0].NewTotal, adjustments[0].PreviousAvailable, adjustments[0].NewAvailable),
            (5, 8, 2, 5),
        )
        self.assertEqual(adjustments[0].Note, "new stock")

    def test_shrink_floors_available_at_zero(self):
        item = create_equipment(self.db, {"name": "Drill", "kind": "borrowable", "quantity": 5})
        borrow_equipment(self.db, item.EquipmentID, "u1", 4)

        updated = update_equipment(self.db, item.EquipmentID, {"quantity": 2})

        self.assertEqual(updated.TotalQuantity, 2)
        self.assertEqual(updated.AvailableQuantity, 0)
        self.assertEqual(updated.Status, "out_of_stock")

    def test_same_quantity_writes_no_adjustment(self):
        item = create_equipment(self.db, {"name": "Drill", "kind": "borrowable", "quantity": 5})

        update_equipment(self.db, item.EquipmentID, {"quantity": 5, "location": "Shelf B"})

        self.assertEqual(list_stock_adjustments(self.db), [])
        self.assertEqual(get_equipment_or_404(self.db, item.EquipmentID).Location, "Shelf B")

    def test_consumable_resize_keeps_counters_equal(self):
        item = create_equipment(self.db, {"name": "Tape", "kind": "consumable", "quantity": 10, "minStock": 3})

        updated = update_equipment(self.db, item.EquipmentID, {"quantity": 2})

        self.assertEqual(updated.TotalQuantity, 2)
        self.assertEqual(updated.AvailableQuantity, 2)
        self.assertEqual(updated.Status, "low_stock")

    def test_min_stock_change_rederives_status(self):
        item = create_equipment(self.db, {"name": "Tape", "kind": "consumable", "quantity": 10})

        updated = update_equipment(self.db, item.EquipmentID, {"minStock": 10})

        self.assertEqual(updated.Status, "low_stock")

    def test_maintenance_status_survives_resize(self):
        item = create_equipment(self.db, {"name": "Drill", "kind": "borrowable", "quantity": 5})
        update_equipment(self.db, item.EquipmentID, {"status": "maintenance"})

        updated = update_equipment(self.db, item.EquipmentID, {"quantity": 7})

        self.assertEqual(updated.Status, "maintenance")
        self.assertEqual(updated.AvailableQuantity, 7)

    def test_kind_cannot_change(self):
        item = create_equipment(self.db, {"name": "Drill", "kind": "borrowable", "quantity": 5})

        with self.assertRaises(WrongKind):
            update_equipment(self.db, item.EquipmentID, {"kind": "consumable"})
        self.assertEqual(get_equipment_or_404(self.db, item.EquipmentID).Kind, "borrowable")

    def test_negative_resize_is_rejected_without_changes(self):
        item = create_equipment(self.db, {"name": "Drill", "kind": "borrowable", "quantity": 5})

        with self.assertRaises(InvalidQuantity):
            update_equipment(self.db, item.EquipmentID, {"quantity": -3})
        self.assertEqual(get_equipment_or_404(self.db, item.EquipmentID).TotalQuantity, 5)

    def test_update_and_delete_missing_item(self):
        with self.assertRaises(NotFound):
            update_equipment(self.db, 999, {"quantity": 3})
        with self.assertRaises(NotFound):
            delete_equipment(self.db, 999)

    def test_delete_removes_item(self):
        item = create_equipment(self.db, {"name": "Drill", "kind": "borrowable", "quantity": 5})

        delete_equipment(self.db, item.EquipmentID)

        with self.assertRaises(NotFound):
            get_equipment_or_404(self.db, item.EquipmentID)

    def test_list_filters(self):
        create_equipment(self.db, {"name": "Drill", "kind": "borrowable", "category": "Power"})
        create_equipment(self.db, {"name": "Tape", "kind": "consumable", "quantity": 0})
        create_equipment(self.db, {"name": "Saw", "kind": "borrowable", "category": "Hand"})

        self.assertEqual([e.EquipmentName for e in list_equipment(self.db)], ["Drill", "Saw", "Tape"])
        self.assertEqual([e.EquipmentName for e in list_equipment(self.db, kind="consumable")], ["Tape"])
        self.assertEqual([e.EquipmentName for e in list_equipment(self.db, status="out_of_stock")], ["Tape"])
        self.assertEqual([e.EquipmentName for e in list_equipment(self.db, category="Hand")], ["Saw"])
        self.assertEqual(len(list_equipment(self.db, kind="all", status="all")), 3)

    def test_serialize_equipment_shape(self):
        item = create_equipment(self.db, {"name": "Drill", "kind": "borrowable", "quantity": 2, "unit": "set"})

        payload = serialize_equipment(item)

        self.assertEqual(payload["type"], "borrowable")
        self.assertEqual(payload["quantity"], 2)
        self.assertEqual(payload["availableQuantity"], 2)
        self.assertEqual(payload["unit"], "set")

    def test_stock_checks_pass_after_mixed_activity(self):
        drill = create_equipment(self.db, {"name": "Drill", "kind": "borrowable", "quantity": 5})
        tape = create_equipment(self.db, {"name": "Tape", "kind": "consumable", "quantity": 10})
        first = borrow_equipment(self.db, drill.EquipmentID, "u1", 3)
        borrow_equipment(self.db, drill.EquipmentID, "u2", 1)
        return_equipment(self.db, first["usageId"], 2)
        withdraw_equipment(self.db, tape.EquipmentID, "u1", 4)

        results = run_checks(self.db)

        self.assertTrue(results)
        self.assertEqual([result.name for result in results if not result.ok], [])

    def test_stock_checks_flag_broken_counters(self):
        tape = create_equipment(self.db, {"name": "Tape", "kind": "consumable", "quantity": 10})
        tape.AvailableQuantity = 12
        self.db.commit()

        failed = [result.name for result in run_checks(self.db) if not result.ok]

        self.assertIn(f"#{tape.EquipmentID} Tape bounds", failed)
        self.assertIn(f"#{tape.EquipmentID} Tape consumable counters", failed)


if __name__ == "__main__":
    unittest.main()
