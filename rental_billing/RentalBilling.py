import hmac
import logging
import os
from datetime import date

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select, text
from sqlalchemy.orm import Session, selectinload

try:
    from dotenv import load_dotenv

    load_dotenv()
except Exception:
    pass

from rental_billing.db.deps import get_billing_db
from rental_billing.models.billing_models import CNAMBond, MedicalDevice, Notification, Rental, RentalPeriod, RepairLog
from rental_billing.schemas.bonds import AmendBondDto, CreateBondDto, NomenclatureUpsert
from rental_billing.schemas.devices import CreateRepairLogDto
from rental_billing.schemas.periods import (
    CreatePaymentDto,
    CreateRentalDto,
    EndDateRequest,
    RecomputeRequest,
    ResolveGapRequest,
    ReturnRequest,
    UpdatePeriodDto,
)
from rental_billing.services.billing_errors import BillingError
from rental_billing.services.billing_store import SqlBillingStore
from rental_billing.services.billing_types import OPEN_NOTIFICATION_STATUSES
from rental_billing.services.bond_catalog import list_tariffs, serialize_tariff, upsert_tariff
from rental_billing.services.bond_numbering import next_bond_number
from rental_billing.services.notification_sweep import run_sweep
from rental_billing.services.rental_service import (
    amend_bond,
    create_bond,
    create_rental,
    log_audit,
    period_reconciliation,
    record_payment,
    record_repair,
    recompute_rental_periods,
    rental_reconciliation,
    resolve_gap,
    return_rental,
    serialize_bond,
    serialize_notification,
    serialize_payment,
    serialize_period,
    serialize_rental,
    serialize_repair_log,
    update_period,
    update_rental_end_date,
)

logging.basicConfig(level=(os.environ.get("LOG_LEVEL") or "INFO").upper())
API_LOGGER = logging.getLogger("rental_billing.api")

app = FastAPI()


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _parse_int_env(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        API_LOGGER.warning("Ignoring non-integer %s=%r", name, raw)
        return default


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:3000,http://localhost:3000",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)

NOTIFICATION_LEAD_DAYS = _parse_int_env("NOTIFICATION_LEAD_DAYS", 30)
BOND_NUMBER_MAX_ATTEMPTS = _parse_int_env("BOND_NUMBER_MAX_ATTEMPTS", 3)


@app.exception_handler(BillingError)
def handle_billing_error(request: Request, exc: BillingError):
    API_LOGGER.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def _cron_authorized(authorization: str | None) -> bool:
    secret = (os.environ.get("CRON_SECRET") or "").strip()
    if not secret or not authorization:
        return False
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return False
    return hmac.compare_digest(token.strip(), secret)


def _rental_or_404(db: Session, rental_id: int) -> Rental:
    rental = db.execute(
        select(Rental)
        .options(selectinload(Rental.MedicalDevice))
        .where(Rental.RentalID == rental_id)
    ).scalars().first()
    if not rental:
        raise HTTPException(status_code=404, detail="Rental not found")
    return rental


def _period_or_404(db: Session, period_id: int) -> RentalPeriod:
    row = db.execute(
        select(RentalPeriod)
        .options(
            selectinload(RentalPeriod.Payments),
            selectinload(RentalPeriod.Rental),
            selectinload(RentalPeriod.Bond),
        )
        .where(RentalPeriod.PeriodID == period_id)
        .execution_options(populate_existing=True)
    ).scalars().first()
    if not row:
        raise HTTPException(status_code=404, detail="Rental period not found")
    return row


def _periods_payload(rows: list[RentalPeriod]) -> list[dict]:
    return [serialize_period(row) for row in rows]


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_billing_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.post("/api/rentals")
def post_rental(payload: CreateRentalDto, db: Session = Depends(get_billing_db)):
    if not db.get(MedicalDevice, payload.medicalDeviceID):
        raise HTTPException(status_code=404, detail="Medical device not found")
    rental = create_rental(db, payload)
    db.commit()
    rows = SqlBillingStore(db).period_rows(rental.RentalID)
    return serialize_rental(_rental_or_404(db, rental.RentalID), rows)


@app.put("/api/rentals/{rental_id}/end-date")
def put_rental_end_date(rental_id: int, payload: EndDateRequest, db: Session = Depends(get_billing_db)):
    _rental_or_404(db, rental_id)
    rows = update_rental_end_date(db, rental_id, payload.endDate, split_months=payload.splitByMonth)
    db.commit()
    return _periods_payload(rows)


@app.post("/api/rentals/{rental_id}/return")
def post_rental_return(rental_id: int, payload: ReturnRequest, db: Session = Depends(get_billing_db)):
    _rental_or_404(db, rental_id)
    try:
        rental = return_rental(db, rental_id, payload.returnDate, payload.notes)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return serialize_rental(rental, SqlBillingStore(db).period_rows(rental_id))


@app.post("/api/rentals/{rental_id}/periods/recompute")
def post_recompute_periods(rental_id: int, payload: RecomputeRequest, db: Session = Depends(get_billing_db)):
    _rental_or_404(db, rental_id)
    rows = recompute_rental_periods(
        db,
        rental_id,
        effective_date=payload.effectiveDate,
        split_months=payload.splitByMonth,
    )
    db.commit()
    return _periods_payload(rows)


@app.get("/api/rentals/{rental_id}/periods")
def get_rental_periods(rental_id: int, db: Session = Depends(get_billing_db)):
    _rental_or_404(db, rental_id)
    return _periods_payload(SqlBillingStore(db).period_rows(rental_id))


@app.get("/api/rentals/{rental_id}/reconciliation")
def get_rental_reconciliation(rental_id: int, db: Session = Depends(get_billing_db)):
    _rental_or_404(db, rental_id)
    return rental_reconciliation(db, rental_id)


@app.get("/api/cnam-bonds/next-number")
def get_next_bond_number(category: str | None = Query(None), db: Session = Depends(get_billing_db)):
    if category and category.upper() not in {"LOCATION", "ACHAT"}:
        raise HTTPException(status_code=400, detail="category must be LOCATION or ACHAT")
    return {"bonNumber": next_bond_number(db, category)}


@app.get("/api/cnam-nomenclature")
def get_nomenclature(
    bond_type: str | None = Query(None, alias="bondType"),
    is_active: bool | None = Query(None, alias="isActive"),
    db: Session = Depends(get_billing_db),
):
    return [serialize_tariff(row) for row in list_tariffs(db, bond_type, is_active)]


@app.post("/api/cnam-nomenclature")
def post_nomenclature(payload: NomenclatureUpsert, db: Session = Depends(get_billing_db)):
    row = upsert_tariff(
        db,
        bond_type=payload.bondType,
        amount=payload.amount,
        category=payload.category,
        monthly_rate=payload.monthlyRate,
        description=payload.description,
        is_active=payload.isActive,
    )
    db.flush()
    log_audit(db, "CNAMNomenclature", row.NomenclatureID, "UpsertTariff", f"{row.BondType} {row.Amount}")
    db.commit()
    return serialize_tariff(row)


@app.get("/api/cnam-bonds")
def get_bonds(
    rental_id: int | None = Query(None, alias="rentalId"),
    patient_id: int | None = Query(None, alias="patientId"),
    status: str | None = Query(None),
    db: Session = Depends(get_billing_db),
):
    stmt = select(CNAMBond).order_by(CNAMBond.BondID.desc())
    if rental_id is not None:
        stmt = stmt.where(CNAMBond.RentalID == rental_id)
    if patient_id is not None:
        stmt = stmt.where(CNAMBond.PatientID == patient_id)
    if status:
        stmt = stmt.where(CNAMBond.Status == status.upper())
    return [serialize_bond(bond) for bond in db.execute(stmt).scalars().all()]


@app.post("/api/cnam-bonds")
def post_bond(payload: CreateBondDto, db: Session = Depends(get_billing_db)):
    if payload.rentalID is not None and not db.get(Rental, payload.rentalID):
        raise HTTPException(status_code=404, detail="Rental not found")
    bond = create_bond(db, payload, max_attempts=BOND_NUMBER_MAX_ATTEMPTS)
    db.commit()
    return serialize_bond(bond)


@app.put("/api/cnam-bonds/{bond_id}")
def put_bond(bond_id: int, payload: AmendBondDto, db: Session = Depends(get_billing_db)):
    bond = db.get(CNAMBond, bond_id)
    if not bond:
        raise HTTPException(status_code=404, detail="CNAM bond not found")
    try:
        amend_bond(db, bond, payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return serialize_bond(bond)


@app.get("/api/rental-periods/{period_id}")
def get_period(period_id: int, db: Session = Depends(get_billing_db)):
    return serialize_period(_period_or_404(db, period_id))


@app.put("/api/rental-periods/{period_id}")
def put_period(period_id: int, payload: UpdatePeriodDto, db: Session = Depends(get_billing_db)):
    row = _period_or_404(db, period_id)
    try:
        update_period(db, row, payload.model_dump(exclude_unset=True))
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return serialize_period(_period_or_404(db, period_id))


@app.post("/api/rental-periods/{period_id}/resolve-gap")
def post_resolve_gap(period_id: int, payload: ResolveGapRequest, db: Session = Depends(get_billing_db)):
    row = _period_or_404(db, period_id)
    try:
        resolve_gap(db, row, payload.note, user_id=payload.operatorUserID)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return serialize_period(row)


@app.get("/api/rental-periods/{period_id}/reconciliation")
def get_period_reconciliation(period_id: int, db: Session = Depends(get_billing_db)):
    return period_reconciliation(_period_or_404(db, period_id))


@app.post("/api/payments")
def post_payment(payload: CreatePaymentDto, db: Session = Depends(get_billing_db)):
    row = _period_or_404(db, payload.rentalPeriodID)
    payment = record_payment(db, row, payload)
    db.commit()
    return serialize_payment(payment)


@app.get("/api/repair-logs")
def get_repair_logs(device_id: int | None = Query(None, alias="deviceId"), db: Session = Depends(get_billing_db)):
    stmt = select(RepairLog).order_by(RepairLog.RepairDate.desc(), RepairLog.RepairLogID.desc())
    if device_id is not None:
        stmt = stmt.where(RepairLog.MedicalDeviceID == device_id)
    return [serialize_repair_log(r) for r in db.execute(stmt).scalars().all()]


@app.post("/api/repair-logs")
def post_repair_log(payload: CreateRepairLogDto, db: Session = Depends(get_billing_db)):
    if not db.get(MedicalDevice, payload.medicalDeviceID):
        raise HTTPException(status_code=404, detail="Medical device not found")
    repair = record_repair(db, payload)
    db.commit()
    return serialize_repair_log(repair)


@app.post("/api/cron/check-notifications")
def check_notifications(
    authorization: str | None = Header(None),
    db: Session = Depends(get_billing_db),
):
    if not _cron_authorized(authorization):
        raise HTTPException(status_code=401, detail="Unauthorized")
    stats = run_sweep(SqlBillingStore(db), today=date.today(), lead_days=NOTIFICATION_LEAD_DAYS)
    db.commit()
    return {"success": True, "stats": stats.as_dict()}


@app.get("/api/notifications/pending")
def get_pending_notifications(db: Session = Depends(get_billing_db)):
    notifications = db.execute(
        select(Notification)
        .where(Notification.Status.in_(OPEN_NOTIFICATION_STATUSES))
        .order_by(Notification.DueDate.asc(), Notification.NotificationID.asc())
    ).scalars().all()
    return [serialize_notification(n) for n in notifications]
