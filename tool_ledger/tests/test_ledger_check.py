import io
import os
import sys
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path

from sqlalchemy import text


os.environ.setdefault("TOOL_LEDGER_DB_URL", "sqlite+pysqlite:///:memory:")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base
from db.session import build_engine, build_session_factory
from models.ledger_models import ServiceTicket
from scripts import ledger_check
from services import catalog_service, transaction_service


class LedgerCheckScriptTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_url = f"sqlite+pysqlite:///{Path(self.tmpdir.name) / 'ledger.db'}"
        self.engine = build_engine(self.db_url)
        Base.metadata.create_all(self.engine)
        SessionLocal = build_session_factory(self.engine)
        with SessionLocal() as db:
            db.add(ServiceTicket(TicketID=1, TicketNumber="SR-0001", Status="open"))
            db.commit()
            tool = catalog_service.create_tool(db, {"toolName": "Torque Wrench", "quantity": 3})
            transaction_service.assign(db, tool.ToolID, 1, 2)
            transaction_service.report_damage(db, tool.ToolID)
            self.tool_id = tool.ToolID

    def tearDown(self):
        self.engine.dispose()
        self.tmpdir.cleanup()

    def _run(self, *args):
        out = io.StringIO()
        with redirect_stdout(out):
            code = ledger_check.main(["--db-url", self.db_url, *args])
        return code, out.getvalue()

    def test_consistent_ledger_passes(self):
        code, output = self._run()
        self.assertEqual(code, 0, output)
        self.assertIn(f"[OK] conservation:{self.tool_id}", output)
        self.assertIn("ToolAssignments: 1", output)

    def test_drift_is_reported(self):
        with self.engine.begin() as conn:
            conn.execute(text("UPDATE Tools SET TotalQuantity = 2 WHERE ToolID = :tool_id"), {"tool_id": self.tool_id})

        code, output = self._run("--skip-counts")
        self.assertEqual(code, 1)
        self.assertIn(f"[FAIL] conservation:{self.tool_id}", output)
        self.assertIn("available=-1", output)
        self.assertNotIn("Row Counts", output)

    def test_missing_url_exits_early(self):
        out = io.StringIO()
        with redirect_stdout(out):
            code = ledger_check.main(["--db-url", ""])
        self.assertEqual(code, 2)


if __name__ == "__main__":
    unittest.main()
