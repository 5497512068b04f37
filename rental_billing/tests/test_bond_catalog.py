import sys
import unittest
from decimal import Decimal
from pathlib import Path

from sqlalchemy import func, select

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from rental_billing.models.billing_models import CNAMNomenclature
from rental_billing.services.billing_errors import TariffNotFound
from rental_billing.services.bond_catalog import list_tariffs, seed_nomenclature, tariff_for, upsert_tariff
from rental_billing.tests.sqlite_support import make_session_factory, make_test_engine


class BondCatalogTests(unittest.TestCase):
    def setUp(self):
        self.engine = make_test_engine()
        self.db = make_session_factory(self.engine)()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _count(self):
        return self.db.execute(select(func.count(CNAMNomenclature.NomenclatureID))).scalar()

    def test_reseeding_overwrites_instead_of_duplicating(self):
        self.assertEqual(seed_nomenclature(self.db), 5)
        self.db.commit()
        upsert_tariff(self.db, "VNI", "600.00")
        self.db.commit()

        seed_nomenclature(self.db)
        self.db.commit()

        self.assertEqual(self._count(), 5)
        self.assertEqual(tariff_for(self.db, "VNI").monthly_rate, Decimal("570.00"))

    def test_lookup_is_case_insensitive(self):
        seed_nomenclature(self.db)
        tariff = tariff_for(self.db, "concentrateur_oxygene")

        self.assertEqual(tariff.category, "LOCATION")
        self.assertEqual(tariff.amount, Decimal("190.00"))
        self.assertEqual(tariff.monthly_rate, Decimal("190.00"))

    def test_purchase_bonds_have_no_monthly_rate(self):
        seed_nomenclature(self.db)
        self.assertEqual(tariff_for(self.db, "CPAP").monthly_rate, Decimal("0.00"))

        row = upsert_tariff(self.db, "MASQUE", "210", category="ACHAT", monthly_rate="50")
        self.db.flush()
        self.assertEqual(row.MonthlyRate, Decimal("0.00"))
        self.assertEqual(row.Amount, Decimal("210.00"))

    def test_location_monthly_rate_defaults_to_amount(self):
        row = upsert_tariff(self.db, "vni", "570")
        self.db.flush()

        self.assertEqual(row.BondType, "VNI")
        self.assertEqual(row.Category, "LOCATION")
        self.assertEqual(row.MonthlyRate, Decimal("570.00"))

    def test_unknown_or_inactive_type_is_not_found(self):
        seed_nomenclature(self.db)
        with self.assertRaises(TariffNotFound):
            tariff_for(self.db, "TENSIOMETRE")

        upsert_tariff(self.db, "AUTRE", "0", is_active=False)
        self.db.flush()
        with self.assertRaises(TariffNotFound):
            tariff_for(self.db, "AUTRE")
        self.assertEqual([row.BondType for row in list_tariffs(self.db, is_active=False)], ["AUTRE"])


if __name__ == "__main__":
    unittest.main()
