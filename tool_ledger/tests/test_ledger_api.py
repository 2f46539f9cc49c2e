import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient
from sqlalchemy import text


os.environ.setdefault("TOOL_LEDGER_DB_URL", "sqlite+pysqlite:///:memory:")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import ToolLedger as app_module
from db.base import Base
from db.session import build_engine, build_session_factory
from models.ledger_models import ServiceTicket
from services import catalog_service


class LedgerApiTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.engine = build_engine(f"sqlite+pysqlite:///{Path(self.tmpdir.name) / 'ledger.db'}")
        Base.metadata.create_all(self.engine)
        self.SessionLocal = build_session_factory(self.engine)

        def _override():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        app_module.app.dependency_overrides[app_module.get_ledger_db] = _override
        self.client = TestClient(app_module.app)

        with self.SessionLocal() as db:
            db.add_all([
                ServiceTicket(TicketID=1, TicketNumber="SR-0001", CustomerName="Ana", Status="in-progress"),
                ServiceTicket(TicketID=2, TicketNumber="SR-0002", CustomerName="Ben", Status="open"),
                ServiceTicket(TicketID=3, TicketNumber="SR-0003", CustomerName="Cy", Status="completed"),
            ])
            db.commit()

    def tearDown(self):
        app_module.app.dependency_overrides.clear()
        self.engine.dispose()
        self.tmpdir.cleanup()

    def _create_tool(self, name="Torque Wrench", quantity=5, **extra):
        body = {"toolName": name, "quantity": quantity, "category": "Hand Tools"}
        body.update(extra)
        response = self.client.post("/api/tools", json=body)
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()["data"]

    def _stats(self, tool_id):
        response = self.client.get(f"/api/tools/{tool_id}/stats")
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()["data"]

    def _assign(self, tool_id, ticket_id, quantity, **extra):
        body = {"toolID": tool_id, "ticketID": ticket_id, "quantity": quantity, "assignedBy": "Mia"}
        body.update(extra)
        return self.client.post("/api/tools/assign", json=body)

    def test_healthz(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.assertEqual(self.client.get("/api/healthz").status_code, 200)

    def test_create_tool_assigns_code_and_full_availability(self):
        tool = self._create_tool()
        self.assertTrue(tool["toolCode"].startswith("TOL"))
        self.assertEqual(tool["stats"]["available"], 5)
        self.assertEqual(tool["status"], "Available")

    def test_create_tool_rejects_zero_quantity(self):
        response = self.client.post("/api/tools", json={"toolName": "Jack", "quantity": 0})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "InvalidQuantity")

    def test_missing_body_fields_use_error_envelope(self):
        response = self.client.post("/api/tools/assign", json={"ticketID": 1, "quantity": 1})
        self.assertEqual(response.status_code, 400)
        payload = response.json()
        self.assertFalse(payload["success"])
        self.assertEqual(payload["error"], "ValidationError")
        self.assertIn("toolID", payload["message"])

    def test_torque_wrench_walkthrough(self):
        tool_id = self._create_tool()["toolID"]

        first = self._assign(tool_id, 1, 2)
        self.assertEqual(first.status_code, 200, first.text)
        stats = self._stats(tool_id)
        self.assertEqual((stats["available"], stats["inUse"]), (3, 2))

        overbook = self._assign(tool_id, 2, 4)
        self.assertEqual(overbook.status_code, 409)
        self.assertEqual(overbook.json()["error"], "InsufficientStock")
        self.assertEqual(overbook.json()["available"], 3)
        self.assertEqual(self._stats(tool_id)["available"], 3)

        assignment_id = first.json()["data"]["assignmentId"]
        returned = self.client.post("/api/tools/return", json={"assignmentId": assignment_id, "returnedBy": "Mia"})
        self.assertEqual(returned.status_code, 200, returned.text)
        self.assertEqual(returned.json()["data"]["status"], "Returned")
        self.assertEqual(self._stats(tool_id)["available"], 5)

        damage = self.client.post("/api/tools/damage", json={"toolID": tool_id, "notes": "Cracked ratchet"})
        self.assertEqual(damage.status_code, 200, damage.text)
        stats = self._stats(tool_id)
        self.assertEqual((stats["available"], stats["damaged"]), (4, 1))

        check_in = self.client.post("/api/tools/check-in", json={"toolID": tool_id, "condition": "Good"})
        self.assertEqual(check_in.status_code, 200, check_in.text)
        self.assertEqual(check_in.json()["data"]["stats"]["damaged"], 0)
        self.assertEqual(self._stats(tool_id)["available"], 5)

    def test_assign_requires_active_ticket(self):
        tool_id = self._create_tool()["toolID"]

        closed = self._assign(tool_id, 3, 1)
        self.assertEqual(closed.status_code, 409)
        self.assertEqual(closed.json()["error"], "Conflict")

        missing = self._assign(tool_id, 999, 1)
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(self._stats(tool_id)["available"], 5)

    def test_assign_rejects_non_positive_quantity(self):
        tool_id = self._create_tool()["toolID"]
        response = self._assign(tool_id, 1, 0)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "InvalidQuantity")

    def test_idempotency_header_replays_assignment(self):
        tool_id = self._create_tool()["toolID"]
        headers = {"Idempotency-Key": "assign-abc"}

        first = self.client.post(
            "/api/tools/assign",
            json={"toolID": tool_id, "ticketID": 1, "quantity": 2},
            headers=headers,
        )
        second = self.client.post(
            "/api/tools/assign",
            json={"toolID": tool_id, "ticketID": 1, "quantity": 2},
            headers=headers,
        )
        self.assertEqual(first.status_code, 200, first.text)
        self.assertEqual(second.status_code, 200, second.text)
        self.assertEqual(first.json()["data"]["assignmentId"], second.json()["data"]["assignmentId"])
        self.assertEqual(self._stats(tool_id)["inUse"], 2)

        changed = self.client.post(
            "/api/tools/assign",
            json={"toolID": tool_id, "ticketID": 1, "quantity": 3},
            headers=headers,
        )
        self.assertEqual(changed.status_code, 409)
        self.assertEqual(changed.json()["error"], "IdempotencyConflict")

    def test_batch_assign_reports_each_item(self):
        wrench = self._create_tool("Torque Wrench", 2)["toolID"]
        jack = self._create_tool("Floor Jack", 1)["toolID"]

        response = self.client.post(
            "/api/tools/assign-batch",
            json={
                "ticketID": 1,
                "assignedBy": "Mia",
                "items": [
                    {"toolID": wrench, "quantity": 2},
                    {"toolID": jack, "quantity": 3},
                    {"toolID": 9999, "quantity": 1},
                ],
            },
        )
        self.assertEqual(response.status_code, 200, response.text)
        payload = response.json()
        self.assertFalse(payload["success"])
        self.assertEqual(payload["data"]["succeeded"], 1)
        results = payload["data"]["results"]
        self.assertTrue(results[0]["success"])
        self.assertEqual(results[1]["error"], "InsufficientStock")
        self.assertEqual(results[2]["error"], "NotFound")
        self.assertEqual(self._stats(wrench)["available"], 0)
        self.assertEqual(self._stats(jack)["available"], 1)

    def test_partial_return_keeps_assignment_active(self):
        tool_id = self._create_tool()["toolID"]
        assignment_id = self._assign(tool_id, 1, 3).json()["data"]["assignmentId"]

        partial = self.client.post("/api/tools/return", json={"assignmentId": assignment_id, "quantity": 1})
        self.assertEqual(partial.status_code, 200, partial.text)
        self.assertEqual(partial.json()["data"]["status"], "Active")
        self.assertEqual(partial.json()["data"]["assignedQuantity"], 2)
        self.assertEqual(self._stats(tool_id)["available"], 3)

        too_many = self.client.post("/api/tools/return", json={"assignmentId": assignment_id, "quantity": 5})
        self.assertEqual(too_many.status_code, 400)
        self.assertEqual(too_many.json()["error"], "InvalidQuantity")

    def test_return_twice_is_not_found(self):
        tool_id = self._create_tool()["toolID"]
        assignment_id = self._assign(tool_id, 1, 1).json()["data"]["assignmentId"]
        self.assertEqual(self.client.post("/api/tools/return", json={"assignmentId": assignment_id}).status_code, 200)

        again = self.client.post("/api/tools/return", json={"assignmentId": assignment_id})
        self.assertEqual(again.status_code, 404)
        self.assertEqual(self._stats(tool_id)["available"], 5)

    def test_damage_cannot_exceed_available(self):
        tool_id = self._create_tool(quantity=2)["toolID"]
        self._assign(tool_id, 1, 2)

        response = self.client.post("/api/tools/damage", json={"toolID": tool_id})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"], "InsufficientStock")

    def test_check_in_without_damage_is_rejected(self):
        tool_id = self._create_tool()["toolID"]
        response = self.client.post("/api/tools/check-in", json={"toolID": tool_id})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "InvalidQuantity")

    def test_check_in_single_damage_record(self):
        tool_id = self._create_tool()["toolID"]
        damage = self.client.post("/api/tools/damage", json={"toolID": tool_id, "quantity": 2}).json()["data"]
        self.assertEqual(len(damage), 2)

        reports = self.client.get("/api/damage-reports", params={"toolId": tool_id}).json()["data"]
        self.assertEqual(len(reports), 2)

        response = self.client.post("/api/tools/check-in", json={"damageId": damage[0]["damageId"]})
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["data"]["resolvedDamageIds"], [damage[0]["damageId"]])
        self.assertEqual(self._stats(tool_id)["damaged"], 1)

    def test_receive_stock_and_write_off(self):
        tool_id = self._create_tool(quantity=2)["toolID"]

        received = self.client.post("/api/tools/receive-stock", json={"toolID": tool_id, "quantity": 3})
        self.assertEqual(received.status_code, 200, received.text)
        self.assertEqual(received.json()["data"]["stats"]["total"], 5)

        self._assign(tool_id, 1, 4)
        blocked = self.client.post("/api/tools/write-off", json={"toolID": tool_id, "quantity": 2})
        self.assertEqual(blocked.status_code, 409)

        written_off = self.client.post("/api/tools/write-off", json={"toolID": tool_id, "quantity": 1, "notes": "Lost"})
        self.assertEqual(written_off.status_code, 200, written_off.text)
        stats = written_off.json()["data"]["stats"]
        self.assertEqual((stats["total"], stats["available"], stats["inUse"]), (4, 0, 4))
        self.assertEqual(written_off.json()["data"]["status"], "Out of Stock")

    def test_update_rejects_quantity_fields(self):
        tool_id = self._create_tool()["toolID"]

        blocked = self.client.put(f"/api/tools/{tool_id}", json={"quantity": 50})
        self.assertEqual(blocked.status_code, 400)

        updated = self.client.put(f"/api/tools/{tool_id}", json={"brand": "Snap-on", "minStock": 2})
        self.assertEqual(updated.status_code, 200, updated.text)
        self.assertEqual(updated.json()["data"]["brand"], "Snap-on")
        self.assertEqual(updated.json()["data"]["stats"]["total"], 5)

    def test_update_racing_another_writer_returns_conflict(self):
        tool_id = self._create_tool()["toolID"]
        clean_field = catalog_service._clean_field

        def _bump_version_then_clean(column, value):
            with self.engine.begin() as conn:
                conn.execute(text("UPDATE Tools SET Version = Version + 1 WHERE ToolID = :id"), {"id": tool_id})
            return clean_field(column, value)

        with mock.patch.object(catalog_service, "_clean_field", side_effect=_bump_version_then_clean):
            response = self.client.put(f"/api/tools/{tool_id}", json={"brand": "Snap-on"})

        self.assertEqual(response.status_code, 409, response.text)
        self.assertFalse(response.json()["success"])
        self.assertEqual(response.json()["error"], "ConcurrentUpdate")
        self.assertIsNone(self.client.get(f"/api/tools/{tool_id}").json()["data"]["brand"])

    def test_oversized_quantities_use_error_envelope(self):
        tool_id = self._create_tool()["toolID"]

        received = self.client.post("/api/tools/receive-stock", json={"toolID": tool_id, "quantity": 10**20})
        self.assertEqual(received.status_code, 400, received.text)
        self.assertEqual(received.json()["error"], "InvalidQuantity")

        assigned = self._assign(tool_id, 1, 10**20)
        self.assertEqual(assigned.status_code, 400, assigned.text)
        self.assertFalse(assigned.json()["success"])

        created = self.client.post("/api/tools", json={"toolName": "Jack", "quantity": 10**20})
        self.assertEqual(created.status_code, 400, created.text)
        self.assertEqual(self._stats(tool_id)["total"], 5)

    def test_unknown_tool_is_not_found(self):
        for path in ("/api/tools/receive-stock", "/api/tools/write-off", "/api/tools/damage"):
            response = self.client.post(path, json={"toolID": 424242, "quantity": 1})
            self.assertEqual(response.status_code, 404, f"{path}: {response.text}")
            self.assertEqual(response.json()["error"], "NotFound")

    def test_delete_blocked_while_assigned(self):
        tool_id = self._create_tool()["toolID"]
        assignment_id = self._assign(tool_id, 1, 1).json()["data"]["assignmentId"]

        blocked = self.client.delete(f"/api/tools/{tool_id}")
        self.assertEqual(blocked.status_code, 409)
        self.assertEqual(blocked.json()["inUse"], 1)

        self.client.post("/api/tools/return", json={"assignmentId": assignment_id})
        deleted = self.client.delete(f"/api/tools/{tool_id}")
        self.assertEqual(deleted.status_code, 200, deleted.text)
        self.assertEqual(self.client.get(f"/api/tools/{tool_id}").status_code, 404)

    def test_fleet_stats_and_reports(self):
        wrench = self._create_tool("Torque Wrench", 5, minStock=3)["toolID"]
        jack = self._create_tool("Floor Jack", 1)["toolID"]
        assignment_id = self._assign(wrench, 1, 2).json()["data"]["assignmentId"]
        self._assign(jack, 2, 1)
        self.client.post("/api/tools/return", json={"assignmentId": assignment_id, "quantity": 2})
        self._assign(wrench, 2, 2)
        self.client.post("/api/tools/damage", json={"toolID": wrench})

        stats = self.client.get("/api/tools/stats").json()["data"]
        self.assertEqual(stats["totalTools"], 2)
        self.assertEqual(stats["totalQuantity"], 6)
        self.assertEqual(stats["toolsInUse"], 3)
        self.assertEqual(stats["damagedTools"], 1)
        self.assertEqual(stats["availableTools"], 2)
        self.assertEqual(stats["returnedTools"], 1)
        self.assertEqual(stats["returnedToday"], 1)

        summary = self.client.get("/api/tools/reports/summary").json()["data"]
        self.assertEqual(summary["lowStock"], 1)
        self.assertEqual(summary["outOfStock"], 1)
        self.assertEqual(summary["underMaintenance"], 1)

        categories = self.client.get("/api/tools/reports/category-distribution").json()["data"]
        self.assertEqual(categories, [{"category": "Hand Tools", "count": 2, "quantity": 6}])

    def test_listing_endpoints(self):
        tool_id = self._create_tool()["toolID"]
        assignment_id = self._assign(tool_id, 1, 2).json()["data"]["assignmentId"]
        self._assign(tool_id, 2, 1)

        assigned = self.client.get("/api/tools/assigned", params={"ticketId": 1}).json()["data"]
        self.assertEqual([item["assignmentId"] for item in assigned], [assignment_id])
        self.assertEqual(assigned[0]["tool"]["toolName"], "Torque Wrench")

        self.client.post("/api/tools/return", json={"assignmentId": assignment_id})
        returned = self.client.get("/api/tools/returned-tools").json()["data"]
        self.assertEqual(returned[0]["ticketNumber"], "SR-0001")
        self.assertEqual(returned[0]["customerName"], "Ana")
        self.assertEqual(len(returned[0]["assignments"]), 1)

        activity = self.client.get("/api/tools/recent-activity", params={"limit": 2}).json()["data"]
        self.assertEqual(len(activity), 2)
        self.assertEqual(activity[0]["type"], "return")

        tickets = self.client.get("/api/tools/tickets/in-progress").json()["data"]
        self.assertEqual(sorted(ticket["ticketNumber"] for ticket in tickets), ["SR-0001", "SR-0002"])

        tools = self.client.get("/api/tools").json()["data"]
        self.assertEqual(tools[0]["stats"]["inUse"], 1)

        self.assertIn("Hand Tools", self.client.get("/api/tools/categories").json()["data"])


if __name__ == "__main__":
    unittest.main()
