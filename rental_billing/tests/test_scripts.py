import contextlib
import io
import sys
import tempfile
import unittest
from datetime import date
from decimal import Decimal
from pathlib import Path

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from rental_billing.models.billing_models import CNAMNomenclature, Payment, RentalPeriod
from rental_billing.scripts import db_overview, seed_cnam_nomenclature
from rental_billing.tests.sqlite_support import add_device, add_rental


class OperatorScriptTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_url = f"sqlite+pysqlite:///{Path(self.tmp.name) / 'billing.db'}"

    def tearDown(self):
        self.tmp.cleanup()

    def _run(self, main, argv):
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            code = main(argv)
        return code, out.getvalue()

    def _seed(self):
        code, output = self._run(seed_cnam_nomenclature.main, ["--db-url", self.db_url, "--create-tables"])
        self.assertEqual(code, 0)
        return output

    def test_seed_is_repeatable(self):
        self.assertIn("OK seeded 5 CNAM tariffs", self._seed())
        self._seed()

        engine = create_engine(self.db_url, future=True)
        with Session(engine) as db:
            self.assertEqual(db.execute(select(func.count(CNAMNomenclature.NomenclatureID))).scalar(), 5)
        engine.dispose()

    def test_overview_without_url_exits_2(self):
        code, output = self._run(db_overview.main, ["--db-url", ""])
        self.assertEqual(code, 2)
        self.assertIn("RENTAL_BILLING_DB_URL", output)

    def test_overview_reports_integrity_violations(self):
        self._seed()
        code, output = self._run(db_overview.main, ["--db-url", self.db_url])
        self.assertEqual(code, 0, output)
        self.assertIn("[OK] rentalperiods:overlapping_periods", output)

        engine = create_engine(self.db_url, future=True)
        with Session(engine) as db:
            rental = add_rental(db, add_device(db))
            january = RentalPeriod(RentalID=rental.RentalID, StartDate=date(2025, 1, 1), EndDate=date(2025, 1, 31),
                                   ExpectedAmount=Decimal("250.00"), CNAMExpectedAmount=Decimal("190.00"),
                                   PatientExpectedAmount=Decimal("50.00"), IsGapPeriod=False)
            overlapping = RentalPeriod(RentalID=rental.RentalID, StartDate=date(2025, 1, 20), EndDate=date(2025, 2, 28),
                                       ExpectedAmount=Decimal("250.00"), IsGapPeriod=True)
            db.add_all([january, overlapping])
            db.flush()
            db.add(Payment(RentalPeriodID=january.PeriodID, Amount=Decimal("10.00"), PaymentDate=date(2025, 1, 5),
                           PeriodStartDate=date(2024, 12, 20), Method="CASH", Status="COMPLETED"))
            db.commit()

        results = {check.name: check for check in db_overview._run_integrity_checks(engine)}
        engine.dispose()

        self.assertFalse(results["rentalperiods:overlapping_periods"].ok)
        self.assertFalse(results["rentalperiods:split_mismatch"].ok)
        self.assertFalse(results["rentalperiods:gap_without_reason"].ok)
        self.assertFalse(results["payments:outside_period_window"].ok)
        self.assertTrue(results["cnambonds:duplicate_bond_number"].ok)

        code, output = self._run(db_overview.main, ["--db-url", self.db_url])
        self.assertEqual(code, 1)
        self.assertIn("[FAIL] rentalperiods:overlapping_periods :: count=1", output)


if __name__ == "__main__":
    unittest.main()
