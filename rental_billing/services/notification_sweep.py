"""Daily renewal/expiration sweep.

Safe to re-run any number of times a day: a notification is only created
when no open notification of the same type already points at the entity.
Each entity is handled inside its own savepoint so one bad record is logged
and skipped instead of aborting the batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable

from rental_billing.services.billing_store import to_billing_period, to_payment_record
from rental_billing.services.billing_types import (
    BOND_STATUS_TRANSITIONS,
    NOTIFY_CNAM_RENEWAL,
    NOTIFY_DEVICE_RELEASED,
    NOTIFY_MAINTENANCE,
    NOTIFY_PAYMENT_OVERDUE,
    NOTIFY_RENTAL_EXPIRATION,
    PERIOD_UNDERPAID,
)
from rental_billing.services.money import add_months, to_decimal
from rental_billing.services.reconciliation import classify_period, paid_amount

DEFAULT_LEAD_DAYS = 30
MAINTENANCE_INTERVAL_MONTHS = 6

logger = logging.getLogger("rental_billing.sweep")


@dataclass
class SweepStats:
    expiring_rentals: int = 0
    cnam_bonds_to_renew: int = 0
    devices_unreserved: int = 0
    bonds_expired: int = 0
    overdue_periods: int = 0
    maintenance_due: int = 0
    notifications_created: int = 0
    failures: int = 0

    def as_dict(self) -> dict:
        return {
            "expiringRentals": self.expiring_rentals,
            "cnamBondsToRenew": self.cnam_bonds_to_renew,
            "devicesUnreserved": self.devices_unreserved,
            "bondsExpired": self.bonds_expired,
            "overduePeriods": self.overdue_periods,
            "maintenanceDue": self.maintenance_due,
            "notificationsCreated": self.notifications_created,
            "failures": self.failures,
        }


def notify_once(store, stats: SweepStats, entity_type: str, entity_id: int, notification_type: str, **fields) -> bool:
    if store.exists_open_notification(entity_type, entity_id, notification_type):
        return False
    store.create_notification(
        Type=notification_type,
        SourceEntityType=entity_type,
        SourceEntityID=entity_id,
        **fields,
    )
    stats.notifications_created += 1
    return True


def _isolated(store, stats: SweepStats, label: str, entity_id, work: Callable[[], None]) -> None:
    try:
        with store.savepoint():
            work()
    except Exception:
        stats.failures += 1
        logger.exception("Sweep step failed for %s %s; continuing", label, entity_id)


def _format_day(value: date) -> str:
    return value.strftime("%d/%m/%Y")


def _sweep_rentals(store, stats: SweepStats, today: date, until: date) -> None:
    rentals = store.expiring_rentals(today, until)
    stats.expiring_rentals = len(rentals)
    for rental in rentals:
        def work(rental=rental):
            device_name = rental.MedicalDevice.Name if rental.MedicalDevice else "appareil"
            notify_once(
                store,
                stats,
                "Rental",
                rental.RentalID,
                NOTIFY_RENTAL_EXPIRATION,
                Title="Expiration de location",
                Message=f"La location {rental.RentalCode or rental.RentalID} ({device_name}) se termine le {_format_day(rental.EndDate)}",
                DueDate=rental.EndDate,
                PatientID=rental.PatientID,
                Metadata={
                    "rentalId": rental.RentalID,
                    "rentalCode": rental.RentalCode,
                    "endDate": rental.EndDate.isoformat(),
                },
            )

        _isolated(store, stats, "rental", rental.RentalID, work)


def _sweep_bonds(store, stats: SweepStats, today: date, until: date) -> None:
    bonds = store.expiring_bonds(today, until)
    stats.cnam_bonds_to_renew = len(bonds)
    for bond in bonds:
        def work(bond=bond):
            notify_once(
                store,
                stats,
                "CNAMBond",
                bond.BondID,
                NOTIFY_CNAM_RENEWAL,
                Title="Renouvellement CNAM requis",
                Message=f"Le bon CNAM {bond.BondNumber} expire le {_format_day(bond.EndDate)}",
                DueDate=bond.EndDate,
                PatientID=bond.PatientID,
                Metadata={
                    "cnamBondId": bond.BondID,
                    "bondNumber": bond.BondNumber,
                    "bondType": bond.BondType,
                    "rentalId": bond.RentalID,
                },
            )

        _isolated(store, stats, "bond", bond.BondID, work)


def _expire_lapsed_bonds(store, stats: SweepStats, today: date) -> None:
    for bond in store.lapsed_bonds(today):
        def work(bond=bond):
            if "EXPIRED" not in BOND_STATUS_TRANSITIONS.get(bond.Status, set()):
                return
            store.expire_bond(bond)
            stats.bonds_expired += 1
            logger.info("Bond %s lapsed on %s", bond.BondNumber, bond.EndDate)

        _isolated(store, stats, "bond", bond.BondID, work)


def _sweep_overdue_periods(store, stats: SweepStats, today: date) -> None:
    for row in store.past_periods_of_active_rentals(today):
        def work(row=row):
            payments = [to_payment_record(p) for p in row.Payments]
            period = to_billing_period(row, bool(payments))
            if classify_period(period, payments, today=today) != PERIOD_UNDERPAID:
                return
            balance = to_decimal(row.ExpectedAmount) - paid_amount(payments)
            notify_once(
                store,
                stats,
                "RentalPeriod",
                row.PeriodID,
                NOTIFY_PAYMENT_OVERDUE,
                Title="Paiement en retard",
                Message=f"Periode du {_format_day(row.StartDate)} au {_format_day(row.EndDate)}: reste {balance} a encaisser",
                DueDate=row.EndDate,
                PatientID=row.Rental.PatientID if row.Rental else None,
                Metadata={
                    "rentalPeriodId": row.PeriodID,
                    "rentalId": row.RentalID,
                    "balance": str(balance),
                },
            )
            stats.overdue_periods += 1

        _isolated(store, stats, "period", row.PeriodID, work)


def _sweep_diagnostics(store, stats: SweepStats, today: date) -> None:
    for diagnostic in store.expired_diagnostics(today):
        def work(diagnostic=diagnostic):
            device = diagnostic.MedicalDevice
            if not store.release_device(device):
                return
            logger.info(
                "Released device %s (%s) from expired diagnostic %s",
                device.Name,
                device.MedicalDeviceID,
                diagnostic.DiagnosticCode,
            )
            if diagnostic.PerformedByID:
                _notify_technician(store, stats, diagnostic, device)
            stats.devices_unreserved += 1

        _isolated(store, stats, "diagnostic", diagnostic.DiagnosticID, work)


def _notify_technician(store, stats: SweepStats, diagnostic, device) -> None:
    notify_once(
        store,
        stats,
        "Diagnostic",
        diagnostic.DiagnosticID,
        NOTIFY_DEVICE_RELEASED,
        Title="Appareil libere automatiquement",
        Message=(
            f"L'appareil {device.Name} a ete libere: la date de suivi du diagnostic "
            f"{diagnostic.DiagnosticCode} est depassee."
        ),
        UserID=diagnostic.PerformedByID,
        PatientID=diagnostic.PatientID,
        DueDate=diagnostic.FollowUpDate,
        Metadata={
            "diagnosticId": diagnostic.DiagnosticID,
            "diagnosticCode": diagnostic.DiagnosticCode,
            "deviceId": device.MedicalDeviceID,
            "followUpDate": diagnostic.FollowUpDate.isoformat(),
        },
    )


def _sweep_maintenance(store, stats: SweepStats, today: date) -> None:
    threshold = add_months(today, -MAINTENANCE_INTERVAL_MONTHS)
    for device in store.devices_on_active_rentals():
        def work(device=device):
            last_repair = store.last_repair_date(device.MedicalDeviceID)
            if last_repair is not None and last_repair >= threshold:
                return
            rental = min(
                (r for r in device.Rentals if r.Status == "ACTIVE"),
                key=lambda r: r.RentalID,
            )
            notify_once(
                store,
                stats,
                "MedicalDevice",
                device.MedicalDeviceID,
                NOTIFY_MAINTENANCE,
                Title="Maintenance requise",
                Message=f"Le dispositif {device.Name} necessite une maintenance",
                DueDate=today,
                PatientID=rental.PatientID,
                Metadata={
                    "deviceId": device.MedicalDeviceID,
                    "deviceName": device.Name,
                    "rentalId": rental.RentalID,
                    "lastMaintenance": last_repair.isoformat() if last_repair else None,
                },
            )
            stats.maintenance_due += 1

        _isolated(store, stats, "device", device.MedicalDeviceID, work)


def run_sweep(store, today: date | None = None, lead_days: int = DEFAULT_LEAD_DAYS) -> SweepStats:
    today = today or date.today()
    until = today + timedelta(days=max(lead_days, 0))
    stats = SweepStats()
    _sweep_rentals(store, stats, today, until)
    _sweep_bonds(store, stats, today, until)
    _expire_lapsed_bonds(store, stats, today)
    _sweep_overdue_periods(store, stats, today)
    _sweep_diagnostics(store, stats, today)
    _sweep_maintenance(store, stats, today)
    logger.info("Sweep for %s finished: %s", today, stats.as_dict())
    return stats
