from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from rental_billing.models.billing_models import AuditLog, CNAMBond, Notification, Payment, Rental, RentalPeriod, RepairLog
from rental_billing.services.billing_errors import InvalidWindow, TariffNotFound
from rental_billing.services.billing_store import SqlBillingStore, to_billing_period, to_bond_coverage, to_payment_record, to_rental_terms
from rental_billing.services.billing_types import (
    ACTIVE_BOND_STATUSES,
    BOND_STATUS_TRANSITIONS,
    BOND_TYPES,
    BillingPeriod,
    PaymentRecord,
)
from rental_billing.services.bond_catalog import tariff_for
from rental_billing.services.bond_numbering import DEFAULT_MAX_ATTEMPTS, insert_bond
from rental_billing.services.money import ZERO, quantize_currency
from rental_billing.services.period_allocator import effective_window_end, recompute_periods, validate_tiling
from rental_billing.services.reconciliation import (
    check_payment_window,
    reconcile_period,
    reconcile_rental,
    serialize_reconciliation,
)

logger = logging.getLogger("rental_billing.periods")
bond_logger = logging.getLogger("rental_billing.bonds")


def log_audit(db: Session, entity_type: str, entity_id: int, action: str, details: str | None = None, user_id: int | None = None) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=details,
            UserID=user_id,
            CreatedAt=datetime.now(),
        )
    )


def _next_code(db: Session, code_column, id_column, prefix: str) -> str:
    token = prefix.upper()
    last = db.execute(
        select(code_column)
        .where(code_column.like(f"{token}-%"))
        .order_by(id_column.desc())
    ).scalars().first()
    next_number = 1
    if last:
        raw = last.replace(f"{token}-", "")
        try:
            next_number = int(raw) + 1
        except ValueError:
            next_number = 1
    return f"{token}-{next_number:04d}"


def generate_rental_code(db: Session, prefix: str = "LOC") -> str:
    return _next_code(db, Rental.RentalCode, Rental.RentalID, prefix or "LOC")


def generate_payment_code(db: Session, prefix: str = "PAY") -> str:
    return _next_code(db, Payment.PaymentCode, Payment.PaymentID, prefix or "PAY")


def recompute_rental_periods(
    db: Session,
    rental_id: int,
    *,
    effective_date: date | None = None,
    split_months: bool = False,
    as_of: date | None = None,
    user_id: int | None = None,
) -> list[RentalPeriod]:
    """Rebuild the rental's periods from ``effective_date`` forward.

    The rental row stays locked for the whole read-then-write so two
    concurrent bond changes cannot produce divergent period sets. Caller
    commits.
    """
    as_of = as_of or date.today()
    store = SqlBillingStore(db)
    rental = store.lock_rental(rental_id)
    if rental is None:
        raise LookupError(f"Rental {rental_id} not found")

    terms = to_rental_terms(rental)
    bond_row = store.active_bond(rental_id)
    bond = to_bond_coverage(bond_row) if bond_row is not None else None
    effective = effective_date or rental.StartDate

    plan = recompute_periods(
        terms,
        bond,
        store.load_periods(rental_id),
        effective_date=effective,
        as_of=as_of,
        split_months=split_months,
    )
    problems = validate_tiling(plan.periods, rental.StartDate, effective_window_end(terms, bond, as_of))
    if problems:
        logger.error("Rental %s: recomputation from %s breaks tiling: %s", rental_id, effective, problems)
        raise InvalidWindow("; ".join(problems))

    rows = store.apply_plan(rental_id, plan)
    summary = (
        f"from {effective.isoformat()}: kept={len(plan.kept)} updated={len(plan.updated)} "
        f"created={len(plan.created)} deleted={len(plan.deleted_ids)}"
    )
    log_audit(db, "Rental", rental_id, "RecomputePeriods", summary, user_id)
    logger.info("Rental %s periods recomputed %s", rental_id, summary)
    return rows


def create_rental(db: Session, payload, *, as_of: date | None = None, user_id: int | None = None) -> Rental:
    if payload.endDate is not None and payload.endDate < payload.startDate:
        raise InvalidWindow(f"Rental endDate {payload.endDate} precedes startDate {payload.startDate}.")

    rental = Rental(
        RentalCode=generate_rental_code(db),
        PatientID=payload.patientID,
        CompanyID=payload.companyID,
        MedicalDeviceID=payload.medicalDeviceID,
        StartDate=payload.startDate,
        EndDate=payload.endDate,
        MonthlyRate=quantize_currency(payload.monthlyRate),
        Status="ACTIVE",
        Notes=payload.notes,
        CreatedDate=datetime.now(),
        UpdatedDate=datetime.now(),
    )
    db.add(rental)
    db.flush()
    log_audit(db, "Rental", rental.RentalID, "CreateRental", rental.RentalCode, user_id)
    recompute_rental_periods(db, rental.RentalID, effective_date=rental.StartDate, as_of=as_of, user_id=user_id)
    return rental


def _supersede_active_bonds(db: Session, bond: CNAMBond) -> list[CNAMBond]:
    previous = db.execute(
        select(CNAMBond)
        .where(CNAMBond.RentalID == bond.RentalID)
        .where(CNAMBond.Category == "LOCATION")
        .where(CNAMBond.Status.in_(ACTIVE_BOND_STATUSES))
        .where(CNAMBond.BondID != bond.BondID)
    ).scalars().all()
    for old in previous:
        old.Status = "EXPIRED"
        old.UpdatedDate = datetime.now()
        log_audit(db, "CNAMBond", old.BondID, "SupersedeBond", f"superseded by {bond.BondNumber}")
        bond_logger.info("Bond %s superseded by %s on rental %s", old.BondNumber, bond.BondNumber, bond.RentalID)
    db.flush()
    return list(previous)


def _links_coverage(bond: CNAMBond) -> bool:
    return (
        bond.RentalID is not None
        and bond.Category == "LOCATION"
        and bond.StartDate is not None
        and bond.EndDate is not None
    )


def create_bond(
    db: Session,
    payload,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    today: date | None = None,
    user_id: int | None = None,
) -> CNAMBond:
    """Issue a bond, number it and re-tile the linked rental. Caller commits."""
    bond_type = payload.bondType.upper()
    if bond_type not in BOND_TYPES:
        raise TariffNotFound(f"Unknown CNAM bond type {payload.bondType!r}.")
    if payload.startDate and payload.endDate and payload.endDate < payload.startDate:
        raise InvalidWindow(f"Bond endDate {payload.endDate} precedes startDate {payload.startDate}.")

    tariff = None
    needs_rate = payload.monthlyRate is None and payload.category != "ACHAT"
    if payload.category is None or payload.amount is None or needs_rate:
        tariff = tariff_for(db, bond_type)
    category = payload.category or tariff.category
    amount = payload.amount if payload.amount is not None else tariff.amount
    if category == "ACHAT":
        monthly_rate = ZERO
    elif payload.monthlyRate is not None:
        monthly_rate = payload.monthlyRate
    else:
        monthly_rate = tariff.monthly_rate

    rental = db.get(Rental, payload.rentalID) if payload.rentalID else None
    patient_id = payload.patientID
    if patient_id is None and rental is not None:
        patient_id = rental.PatientID

    bond = CNAMBond(
        BondNumber=payload.bondNumber or None,
        BondType=bond_type,
        Category=category,
        Amount=quantize_currency(amount),
        MonthlyRate=quantize_currency(monthly_rate),
        Status=payload.status or "PENDING",
        DossierNumber=payload.dossierNumber,
        StartDate=payload.startDate,
        EndDate=payload.endDate,
        RenewalReminderDays=payload.renewalReminderDays,
        Notes=payload.notes,
        RentalID=rental.RentalID if rental is not None else None,
        PatientID=patient_id,
        CreatedDate=datetime.now(),
        UpdatedDate=datetime.now(),
    )
    insert_bond(db, bond, max_attempts=max_attempts, today=today)
    log_audit(db, "CNAMBond", bond.BondID, "IssueBond", f"{bond.BondNumber} {bond.BondType} {bond.Category}", user_id)

    if _links_coverage(bond):
        _supersede_active_bonds(db, bond)
        recompute_rental_periods(
            db,
            bond.RentalID,
            effective_date=bond.StartDate,
            split_months=payload.splitByMonth,
            as_of=today,
            user_id=user_id,
        )
    return bond


def amend_bond(db: Session, bond: CNAMBond, payload, *, today: date | None = None, user_id: int | None = None) -> CNAMBond:
    """Apply status/date changes and recompute from the earliest affected date."""
    today = today or date.today()
    old_start = bond.StartDate
    was_covering = _links_coverage(bond) and bond.Status in ACTIVE_BOND_STATUSES

    if payload.status and payload.status != bond.Status:
        allowed = BOND_STATUS_TRANSITIONS.get(bond.Status, set())
        if payload.status not in allowed:
            raise ValueError(f"Invalid bond status transition: {bond.Status} -> {payload.status}")
        bond.Status = payload.status

    start = payload.startDate or bond.StartDate
    end = payload.endDate or bond.EndDate
    if start and end and end < start:
        raise InvalidWindow(f"Bond endDate {end} precedes startDate {start}.")
    bond.StartDate = start
    bond.EndDate = end
    if payload.dossierNumber is not None:
        bond.DossierNumber = payload.dossierNumber
    if payload.notes is not None:
        bond.Notes = payload.notes
    bond.UpdatedDate = datetime.now()
    db.flush()
    log_audit(db, "CNAMBond", bond.BondID, "AmendBond", f"status={bond.Status} window={start}..{end}", user_id)

    is_covering = _links_coverage(bond) and bond.Status in ACTIVE_BOND_STATUSES
    if not (was_covering or is_covering):
        return bond

    if bond.Status == "EXPIRED" and was_covering:
        effective = max(today, old_start)
    else:
        candidates = [d for d in (old_start, start) if d is not None]
        effective = min(candidates) if candidates else None
    recompute_rental_periods(
        db,
        bond.RentalID,
        effective_date=effective,
        split_months=payload.splitByMonth,
        as_of=today,
        user_id=user_id,
    )
    return bond


def _tail_effective_date(store: SqlBillingStore, rental: Rental, new_end: date) -> date:
    periods = store.load_periods(rental.RentalID)
    if not periods:
        return rental.StartDate
    return min(new_end, periods[-1].end_date) + timedelta(days=1)


def update_rental_end_date(
    db: Session,
    rental_id: int,
    new_end: date,
    *,
    split_months: bool = False,
    as_of: date | None = None,
    user_id: int | None = None,
) -> list[RentalPeriod]:
    store = SqlBillingStore(db)
    rental = store.lock_rental(rental_id)
    if rental is None:
        raise LookupError(f"Rental {rental_id} not found")
    if new_end < rental.StartDate:
        raise InvalidWindow(f"Rental endDate {new_end} precedes startDate {rental.StartDate}.")

    effective = _tail_effective_date(store, rental, new_end)
    previous_end = rental.EndDate
    rental.EndDate = new_end
    rental.UpdatedDate = datetime.now()
    db.flush()
    log_audit(db, "Rental", rental_id, "UpdateEndDate", f"{previous_end} -> {new_end}", user_id)
    return recompute_rental_periods(
        db,
        rental_id,
        effective_date=effective,
        split_months=split_months,
        as_of=as_of,
        user_id=user_id,
    )


def return_rental(
    db: Session,
    rental_id: int,
    return_date: date | None = None,
    notes: str | None = None,
    *,
    as_of: date | None = None,
    user_id: int | None = None,
) -> Rental:
    rental = db.get(Rental, rental_id)
    if rental is None:
        raise LookupError(f"Rental {rental_id} not found")
    if rental.Status in {"COMPLETED", "CANCELLED"}:
        raise ValueError(f"Rental is already {rental.Status}")

    returned_on = return_date or date.today()
    update_rental_end_date(db, rental_id, returned_on, as_of=as_of, user_id=user_id)
    rental.Status = "COMPLETED"
    if notes:
        rental.Notes = f"{rental.Notes}\n{notes}" if rental.Notes else notes
    rental.UpdatedDate = datetime.now()
    db.flush()
    log_audit(db, "Rental", rental_id, "ReturnDevice", f"returned {returned_on.isoformat()}", user_id)
    return rental


def update_period(db: Session, row: RentalPeriod, changes: dict, *, user_id: int | None = None) -> RentalPeriod:
    """Manual edit of one period. ``changes`` holds only the fields the caller sent."""
    start = changes.get("startDate") or row.StartDate
    end = changes.get("endDate") or row.EndDate
    if end < start:
        raise InvalidWindow(f"Period endDate {end} precedes startDate {start}.")

    siblings = db.execute(
        select(RentalPeriod)
        .where(RentalPeriod.RentalID == row.RentalID)
        .where(RentalPeriod.PeriodID != row.PeriodID)
    ).scalars().all()
    for sibling in siblings:
        if sibling.StartDate <= end and sibling.EndDate >= start:
            raise InvalidWindow(
                f"Period {start}..{end} overlaps period {sibling.StartDate}..{sibling.EndDate} of the same rental."
            )
    if start != row.StartDate or end != row.EndDate:
        rental = db.get(Rental, row.RentalID)
        window = [BillingPeriod(start_date=s.StartDate, end_date=s.EndDate, expected_amount=ZERO) for s in siblings]
        window.append(BillingPeriod(start_date=start, end_date=end, expected_amount=ZERO))
        # open-ended rentals have no fixed tail to reach
        window_end = rental.EndDate or max(p.end_date for p in window)
        problems = validate_tiling(window, rental.StartDate, window_end)
        if problems:
            raise InvalidWindow("Period edit leaves days uncovered: " + "; ".join(problems))

    if changes.get("expectedAmount") is not None:
        expected = quantize_currency(changes["expectedAmount"])
    else:
        expected = quantize_currency(row.ExpectedAmount)
    cnam = changes["cnamExpectedAmount"] if "cnamExpectedAmount" in changes else row.CNAMExpectedAmount
    patient = changes["patientExpectedAmount"] if "patientExpectedAmount" in changes else row.PatientExpectedAmount
    cnam = None if cnam is None else quantize_currency(cnam)
    patient = None if patient is None else quantize_currency(patient)
    if cnam is not None and patient is not None and cnam + patient != expected:
        raise ValueError("cnamExpectedAmount + patientExpectedAmount must equal expectedAmount")

    is_gap = changes["isGapPeriod"] if changes.get("isGapPeriod") is not None else bool(row.IsGapPeriod)
    gap_reason = changes["gapReason"] if "gapReason" in changes else row.GapReason
    if is_gap and not (gap_reason or "").strip():
        raise ValueError("gapReason is required for a gap period")
    if not is_gap:
        gap_reason = None

    bond_id = changes["cnamBondId"] if "cnamBondId" in changes else row.CNAMBondID
    if bond_id is not None and db.get(CNAMBond, bond_id) is None:
        raise LookupError(f"CNAM bond {bond_id} not found")

    reshaped = BillingPeriod(
        period_id=row.PeriodID,
        rental_id=row.RentalID,
        start_date=start,
        end_date=end,
        expected_amount=expected,
        cnam_expected_amount=cnam,
        patient_expected_amount=patient,
        is_gap_period=is_gap,
        gap_reason=gap_reason,
        cnam_bond_id=bond_id,
    )
    for payment in row.Payments:
        check_payment_window(reshaped, to_payment_record(payment))

    if start != row.StartDate or end != row.EndDate or is_gap != bool(row.IsGapPeriod):
        row.GapResolvedAt = None
        row.GapResolutionNote = None
    row.StartDate = start
    row.EndDate = end
    row.ExpectedAmount = expected
    row.CNAMExpectedAmount = cnam
    row.PatientExpectedAmount = patient
    row.IsGapPeriod = is_gap
    row.GapReason = gap_reason
    row.CNAMBondID = bond_id
    if "notes" in changes:
        row.Notes = changes["notes"]
    row.UpdatedDate = datetime.now()
    db.flush()
    log_audit(db, "RentalPeriod", row.PeriodID, "EditPeriod", ", ".join(sorted(changes)), user_id)
    return row


def resolve_gap(db: Session, row: RentalPeriod, note: str, *, user_id: int | None = None) -> RentalPeriod:
    if not row.IsGapPeriod:
        raise ValueError("Only gap periods can be resolved")
    if not (note or "").strip():
        raise ValueError("A resolution note is required")
    row.GapResolvedAt = datetime.now()
    row.GapResolutionNote = note.strip()
    row.UpdatedDate = datetime.now()
    db.flush()
    log_audit(db, "RentalPeriod", row.PeriodID, "ResolveGap", row.GapResolutionNote, user_id)
    logger.info("Gap period %s of rental %s resolved", row.PeriodID, row.RentalID)
    return row


def record_payment(db: Session, row: RentalPeriod, payload, *, user_id: int | None = None) -> Payment:
    record = PaymentRecord(
        period_id=row.PeriodID,
        amount=quantize_currency(payload.amount),
        payment_date=payload.paymentDate,
        method=payload.method,
        status=payload.status,
        period_start_date=payload.periodStartDate,
        period_end_date=payload.periodEndDate,
    )
    check_payment_window(to_billing_period(row), record)

    payment = Payment(
        PaymentCode=payload.paymentCode or generate_payment_code(db),
        Period=row,
        Amount=record.amount,
        PaymentDate=record.payment_date,
        PeriodStartDate=record.period_start_date,
        PeriodEndDate=record.period_end_date,
        Method=record.method,
        Status=record.status,
        Notes=payload.notes,
        CreatedDate=datetime.now(),
    )
    db.add(payment)
    db.flush()
    log_audit(db, "Payment", payment.PaymentID, "RecordPayment", f"{payment.Amount} {payment.Method} on period {row.PeriodID}", user_id)
    return payment


def record_repair(db: Session, payload, *, user_id: int | None = None) -> RepairLog:
    """Log a maintenance visit; a recent one keeps the device out of the maintenance sweep."""
    repair = RepairLog(
        MedicalDeviceID=payload.medicalDeviceID,
        RepairDate=payload.repairDate,
        TechnicianID=payload.technicianID,
        Description=payload.description,
        CreatedDate=datetime.now(),
    )
    db.add(repair)
    db.flush()
    log_audit(db, "MedicalDevice", repair.MedicalDeviceID, "RecordRepair", repair.RepairDate.isoformat(), user_id)
    return repair


def rental_reconciliation(db: Session, rental_id: int, today: date | None = None) -> dict:
    store = SqlBillingStore(db)
    summary = reconcile_rental(store.load_periods(rental_id), store.payments_by_period(rental_id), today=today)
    summary["rentalID"] = rental_id
    summary["periods"] = [serialize_reconciliation(item) for item in summary["periods"]]
    return summary


def period_reconciliation(row: RentalPeriod, today: date | None = None) -> dict:
    payments = [to_payment_record(payment) for payment in row.Payments]
    result = reconcile_period(to_billing_period(row, bool(payments)), payments, today=today)
    return serialize_reconciliation(result)


def serialize_payment(payment: Payment) -> dict:
    return {
        "paymentID": payment.PaymentID,
        "paymentCode": payment.PaymentCode,
        "rentalPeriodID": payment.RentalPeriodID,
        "amount": payment.Amount,
        "paymentDate": payment.PaymentDate,
        "periodStartDate": payment.PeriodStartDate,
        "periodEndDate": payment.PeriodEndDate,
        "method": payment.Method,
        "status": payment.Status,
        "notes": payment.Notes,
        "createdDate": payment.CreatedDate,
    }


def serialize_bond(bond: CNAMBond) -> dict:
    return {
        "bondID": bond.BondID,
        "bondNumber": bond.BondNumber,
        "bondType": bond.BondType,
        "category": bond.Category,
        "amount": bond.Amount,
        "monthlyRate": bond.MonthlyRate,
        "status": bond.Status,
        "dossierNumber": bond.DossierNumber,
        "startDate": bond.StartDate,
        "endDate": bond.EndDate,
        "renewalReminderDays": bond.RenewalReminderDays,
        "notes": bond.Notes,
        "rentalID": bond.RentalID,
        "patientID": bond.PatientID,
        "createdDate": bond.CreatedDate,
        "updatedDate": bond.UpdatedDate,
    }


def serialize_period(row: RentalPeriod, include_relations: bool = True) -> dict:
    data = {
        "periodID": row.PeriodID,
        "rentalID": row.RentalID,
        "cnamBondID": row.CNAMBondID,
        "startDate": row.StartDate,
        "endDate": row.EndDate,
        "expectedAmount": row.ExpectedAmount,
        "cnamExpectedAmount": row.CNAMExpectedAmount,
        "patientExpectedAmount": row.PatientExpectedAmount,
        "isGapPeriod": bool(row.IsGapPeriod),
        "gapReason": row.GapReason,
        "gapResolvedAt": row.GapResolvedAt,
        "gapResolutionNote": row.GapResolutionNote,
        "notes": row.Notes,
    }
    if not include_relations:
        return data

    rental = row.Rental
    data["rental"] = None if rental is None else {
        "rentalID": rental.RentalID,
        "rentalCode": rental.RentalCode,
        "patientID": rental.PatientID,
        "companyID": rental.CompanyID,
        "status": rental.Status,
    }
    data["bond"] = None if row.Bond is None else {
        "bondID": row.Bond.BondID,
        "bondNumber": row.Bond.BondNumber,
        "bondType": row.Bond.BondType,
        "status": row.Bond.Status,
    }
    data["payments"] = [serialize_payment(payment) for payment in row.Payments]
    return data


def serialize_rental(rental: Rental, periods: list[RentalPeriod] | None = None) -> dict:
    data = {
        "rentalID": rental.RentalID,
        "rentalCode": rental.RentalCode,
        "patientID": rental.PatientID,
        "companyID": rental.CompanyID,
        "medicalDeviceID": rental.MedicalDeviceID,
        "deviceName": rental.MedicalDevice.Name if rental.MedicalDevice else None,
        "startDate": rental.StartDate,
        "endDate": rental.EndDate,
        "monthlyRate": rental.MonthlyRate,
        "status": rental.Status,
        "notes": rental.Notes,
    }
    if periods is not None:
        data["periods"] = [serialize_period(row, include_relations=False) for row in periods]
    return data


def serialize_notification(notification: Notification) -> dict:
    return {
        "notificationID": notification.NotificationID,
        "title": notification.Title,
        "message": notification.Message,
        "type": notification.Type,
        "status": notification.Status,
        "dueDate": notification.DueDate,
        "userID": notification.UserID,
        "patientID": notification.PatientID,
        "sourceEntityType": notification.SourceEntityType,
        "sourceEntityID": notification.SourceEntityID,
        "metadata": notification.Metadata or {},
        "createdAt": notification.CreatedAt,
    }


def serialize_repair_log(repair: RepairLog) -> dict:
    return {
        "repairLogID": repair.RepairLogID,
        "medicalDeviceID": repair.MedicalDeviceID,
        "repairDate": repair.RepairDate,
        "technicianID": repair.TechnicianID,
        "description": repair.Description,
    }
