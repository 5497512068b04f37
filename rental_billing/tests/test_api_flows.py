import os
import sys
import unittest
from datetime import date
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient


os.environ.setdefault("RENTAL_BILLING_DB_URL", "sqlite+pysqlite:///:memory:")

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

import rental_billing.RentalBilling as app_module
from rental_billing.services.bond_catalog import seed_nomenclature
from rental_billing.tests.sqlite_support import add_device, make_session_factory, make_test_engine


class BillingApiFlowTests(unittest.TestCase):
    def setUp(self):
        self.engine = make_test_engine()
        self.SessionLocal = make_session_factory(self.engine)
        with self.SessionLocal() as db:
            seed_nomenclature(db)
            self.device_id = add_device(db).MedicalDeviceID
            db.commit()

        def _override():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        app_module.app.dependency_overrides[app_module.get_billing_db] = _override
        self.client = TestClient(app_module.app)
        self.year = date.today().year

    def tearDown(self):
        app_module.app.dependency_overrides.clear()
        self.engine.dispose()

    def _create_rental(self, **overrides):
        body = {
            "medicalDeviceID": self.device_id,
            "patientID": 12,
            "startDate": "2025-01-01",
            "endDate": "2025-06-30",
            "monthlyRate": "250.00",
        }
        body.update(overrides)
        response = self.client.post("/api/rentals", json=body)
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def _attach_bond(self, rental_id, **overrides):
        body = {
            "bondType": "CONCENTRATEUR_OXYGENE",
            "rentalID": rental_id,
            "startDate": "2025-02-01",
            "endDate": "2025-04-30",
            "status": "APPROUVE",
        }
        body.update(overrides)
        return self.client.post("/api/cnam-bonds", json=body)

    def test_health_endpoints(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.assertEqual(self.client.get("/api/healthz").status_code, 200)

    def test_next_bond_number_starts_the_year_at_one(self):
        response = self.client.get("/api/cnam-bonds/next-number", params={"category": "LOCATION"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"bonNumber": f"BL-{self.year}-0001"})

        self.assertEqual(self.client.get("/api/cnam-bonds/next-number", params={"category": "SALE"}).status_code, 400)

    def test_rental_and_bond_produce_three_periods(self):
        rental = self._create_rental()
        self.assertEqual(len(rental["periods"]), 1)
        gap_id = rental["periods"][0]["periodID"]

        bond = self._attach_bond(rental["rentalID"])
        self.assertEqual(bond.status_code, 200, bond.text)
        self.assertEqual(bond.json()["bondNumber"], f"BL-{self.year}-0001")
        self.assertEqual(bond.json()["monthlyRate"], 190.0)

        periods = self.client.get(f"/api/rentals/{rental['rentalID']}/periods").json()
        self.assertEqual(
            [(p["startDate"], p["endDate"]) for p in periods],
            [("2025-01-01", "2025-01-31"), ("2025-02-01", "2025-04-30"), ("2025-05-01", "2025-06-30")],
        )
        self.assertEqual([p["expectedAmount"] for p in periods], [250.0, 750.0, 500.0])
        self.assertEqual(periods[1]["cnamExpectedAmount"], 570.0)
        self.assertEqual(periods[1]["patientExpectedAmount"], 180.0)
        self.assertEqual(periods[0]["periodID"], gap_id)
        self.assertTrue(periods[2]["isGapPeriod"])
        self.assertEqual(periods[1]["bond"]["bondNumber"], f"BL-{self.year}-0001")

    def test_payments_move_period_from_underpaid_to_settled(self):
        rental = self._create_rental()
        self._attach_bond(rental["rentalID"])
        covered = self.client.get(f"/api/rentals/{rental['rentalID']}/periods").json()[1]

        first = self.client.post(
            "/api/payments",
            json={"rentalPeriodID": covered["periodID"], "amount": "100.00", "paymentDate": "2025-03-01", "method": "CNAM"},
        )
        self.assertEqual(first.status_code, 200, first.text)
        summary = self.client.get(f"/api/rental-periods/{covered['periodID']}/reconciliation").json()
        self.assertEqual(summary["status"], "UNDERPAID")
        self.assertEqual(summary["balance"], 650.0)

        self.client.post(
            "/api/payments",
            json={"rentalPeriodID": covered["periodID"], "amount": "650.00", "paymentDate": "2025-04-01", "method": "CASH"},
        )
        summary = self.client.get(f"/api/rental-periods/{covered['periodID']}/reconciliation").json()
        self.assertEqual(summary["status"], "SETTLED")
        self.assertEqual(summary["cnamPaid"], 100.0)
        self.assertEqual(summary["patientPaid"], 650.0)

        detail = self.client.get(f"/api/rental-periods/{covered['periodID']}").json()
        self.assertEqual(len(detail["payments"]), 2)
        self.assertEqual(detail["rental"]["rentalID"], rental["rentalID"])

        totals = self.client.get(f"/api/rentals/{rental['rentalID']}/reconciliation").json()
        self.assertEqual(totals["statusCounts"], {"GAP_UNRESOLVED": 2, "SETTLED": 1})
        self.assertEqual(totals["paidAmount"], 750.0)

    def test_gap_resolution_changes_classification(self):
        rental = self._create_rental()
        gap_id = rental["periods"][0]["periodID"]
        self.assertEqual(self.client.get(f"/api/rental-periods/{gap_id}/reconciliation").json()["status"], "GAP_UNRESOLVED")

        response = self.client.post(f"/api/rental-periods/{gap_id}/resolve-gap", json={"note": "Prise en charge mutuelle"})
        self.assertEqual(response.status_code, 200)
        self.assertIsNotNone(response.json()["gapResolvedAt"])
        self.assertEqual(self.client.get(f"/api/rental-periods/{gap_id}/reconciliation").json()["status"], "UNDERPAID")

    def test_taxonomy_errors_are_typed(self):
        inverted = self.client.post(
            "/api/rentals",
            json={"medicalDeviceID": self.device_id, "patientID": 1, "startDate": "2025-03-01", "endDate": "2025-02-01", "monthlyRate": "10"},
        )
        self.assertEqual(inverted.status_code, 400)
        self.assertEqual(inverted.json()["error"], "InvalidWindow")

        rental = self._create_rental()
        unknown = self._attach_bond(rental["rentalID"], bondType="TENSIOMETRE")
        self.assertEqual(unknown.status_code, 404)
        self.assertEqual(unknown.json()["error"], "TariffNotFound")

        self.assertEqual(self._attach_bond(rental["rentalID"], bondNumber="BL-2025-0042").status_code, 200)
        duplicate = self._attach_bond(None, bondNumber="BL-2025-0042")
        self.assertEqual(duplicate.status_code, 409)
        self.assertEqual(duplicate.json()["error"], "DuplicateBondNumber")

        gap_id = self.client.get(f"/api/rentals/{rental['rentalID']}/periods").json()[0]["periodID"]
        mismatch = self.client.post(
            "/api/payments",
            json={
                "rentalPeriodID": gap_id,
                "amount": "50",
                "paymentDate": "2025-01-10",
                "method": "CASH",
                "periodStartDate": "2024-12-15",
                "periodEndDate": "2025-01-10",
            },
        )
        self.assertEqual(mismatch.status_code, 422)
        self.assertEqual(mismatch.json()["error"], "PaymentPeriodMismatch")

    def test_rental_needs_exactly_one_customer(self):
        response = self.client.post(
            "/api/rentals",
            json={"medicalDeviceID": self.device_id, "patientID": 1, "companyID": 2, "startDate": "2025-01-01", "monthlyRate": "10"},
        )
        self.assertEqual(response.status_code, 422)
        missing_rental = self._attach_bond(999)
        self.assertEqual(missing_rental.status_code, 404)

    def test_period_edit_validation(self):
        rental = self._create_rental()
        self._attach_bond(rental["rentalID"])
        first, covered, _ = self.client.get(f"/api/rentals/{rental['rentalID']}/periods").json()

        overlap = self.client.put(f"/api/rental-periods/{first['periodID']}", json={"endDate": "2025-02-15"})
        self.assertEqual(overlap.status_code, 400)
        self.assertEqual(overlap.json()["error"], "InvalidWindow")

        split = self.client.put(f"/api/rental-periods/{covered['periodID']}", json={"cnamExpectedAmount": "600.00"})
        self.assertEqual(split.status_code, 400)

        missing_bond = self.client.put(f"/api/rental-periods/{covered['periodID']}", json={"cnamBondId": 999})
        self.assertEqual(missing_bond.status_code, 404)

        detach = self.client.put(
            f"/api/rental-periods/{covered['periodID']}",
            json={"cnamBondId": None, "isGapPeriod": True, "gapReason": "bon refuse", "cnamExpectedAmount": None, "patientExpectedAmount": "750.00"},
        )
        self.assertEqual(detach.status_code, 200, detach.text)
        self.assertIsNone(detach.json()["cnamBondID"])
        self.assertTrue(detach.json()["isGapPeriod"])

    def test_end_date_and_return(self):
        rental = self._create_rental()
        self._attach_bond(rental["rentalID"])

        shortened = self.client.put(f"/api/rentals/{rental['rentalID']}/end-date", json={"endDate": "2025-03-31"})
        self.assertEqual(shortened.status_code, 200)
        self.assertEqual(shortened.json()[-1]["endDate"], "2025-03-31")
        self.assertEqual(len(shortened.json()), 2)

        returned = self.client.post(f"/api/rentals/{rental['rentalID']}/return", json={"returnDate": "2025-03-31"})
        self.assertEqual(returned.status_code, 200)
        self.assertEqual(returned.json()["status"], "COMPLETED")
        self.assertEqual(self.client.post(f"/api/rentals/{rental['rentalID']}/return", json={}).status_code, 400)

        recomputed = self.client.post(f"/api/rentals/{rental['rentalID']}/periods/recompute", json={"splitByMonth": True})
        self.assertEqual(recomputed.status_code, 200)
        self.assertEqual([p["startDate"] for p in recomputed.json()], ["2025-01-01", "2025-02-01", "2025-03-01"])

    def test_bond_amendment_rules(self):
        rental = self._create_rental()
        bond = self._attach_bond(rental["rentalID"]).json()

        back = self.client.put(f"/api/cnam-bonds/{bond['bondID']}", json={"status": "PENDING"})
        self.assertEqual(back.status_code, 400)

        extended = self.client.put(f"/api/cnam-bonds/{bond['bondID']}", json={"endDate": "2025-06-30"})
        self.assertEqual(extended.status_code, 200)
        periods = self.client.get(f"/api/rentals/{rental['rentalID']}/periods").json()
        self.assertEqual(len(periods), 2)
        self.assertFalse(periods[-1]["isGapPeriod"])

        listed = self.client.get("/api/cnam-bonds", params={"rentalId": rental["rentalID"]}).json()
        self.assertEqual([b["bondID"] for b in listed], [bond["bondID"]])
        self.assertEqual(self.client.put("/api/cnam-bonds/999", json={}).status_code, 404)

    def test_nomenclature_upsert(self):
        listed = self.client.get("/api/cnam-nomenclature").json()
        self.assertEqual(len(listed), 5)

        response = self.client.post(
            "/api/cnam-nomenclature",
            json={"bondType": "masque", "category": "ACHAT", "amount": "220.00", "monthlyRate": "15"},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["monthlyRate"], 0.0)
        self.assertEqual(response.json()["amount"], 220.0)
        self.assertEqual(len(self.client.get("/api/cnam-nomenclature").json()), 5)

    def test_repair_logs_are_listed_newest_first(self):
        for day in ("2025-01-15", "2025-03-02"):
            response = self.client.post(
                "/api/repair-logs",
                json={"medicalDeviceID": self.device_id, "repairDate": day, "technicianID": 4, "description": "Revision"},
            )
            self.assertEqual(response.status_code, 200, response.text)

        listed = self.client.get("/api/repair-logs", params={"deviceId": self.device_id}).json()
        self.assertEqual([r["repairDate"] for r in listed], ["2025-03-02", "2025-01-15"])
        self.assertEqual(listed[0]["technicianID"], 4)
        self.assertEqual(self.client.get("/api/repair-logs", params={"deviceId": 999}).json(), [])

        unknown = self.client.post("/api/repair-logs", json={"medicalDeviceID": 999, "repairDate": "2025-03-02"})
        self.assertEqual(unknown.status_code, 404)

    def test_cron_requires_the_bearer_secret(self):
        with mock.patch.dict(os.environ, {"CRON_SECRET": ""}):
            self.assertEqual(self.client.post("/api/cron/check-notifications").status_code, 401)

        with mock.patch.dict(os.environ, {"CRON_SECRET": "s3cret"}):
            wrong = self.client.post("/api/cron/check-notifications", headers={"Authorization": "Bearer nope"})
            self.assertEqual(wrong.status_code, 401)

            ok = self.client.post("/api/cron/check-notifications", headers={"Authorization": "Bearer s3cret"})
            self.assertEqual(ok.status_code, 200)
            body = ok.json()
            self.assertTrue(body["success"])
            self.assertEqual(
                set(body["stats"]),
                {"expiringRentals", "cnamBondsToRenew", "devicesUnreserved", "bondsExpired", "overduePeriods", "maintenanceDue", "notificationsCreated", "failures"},
            )

        pending = self.client.get("/api/notifications/pending")
        self.assertEqual(pending.status_code, 200)


if __name__ == "__main__":
    unittest.main()
