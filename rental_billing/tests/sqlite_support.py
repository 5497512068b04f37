from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rental_billing.db.base import Base
from rental_billing.models.billing_models import MedicalDevice, Rental


def make_test_engine():
    """In-memory SQLite shared by every session of one test, with working SAVEPOINTs."""
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    return engine


def make_session_factory(engine):
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


def add_device(db, name="Concentrateur 5L", status="ACTIVE") -> MedicalDevice:
    device = MedicalDevice(Name=name, DeviceCode=f"DEV-{name[:3].upper()}", Status=status)
    db.add(device)
    db.flush()
    return device


def add_rental(db, device, start=date(2025, 1, 1), end=date(2025, 6, 30), rate="250.00", patient_id=1, status="ACTIVE") -> Rental:
    rental = Rental(
        RentalCode=f"LOC-T{device.MedicalDeviceID:03d}",
        PatientID=patient_id,
        MedicalDeviceID=device.MedicalDeviceID,
        StartDate=start,
        EndDate=end,
        MonthlyRate=Decimal(rate),
        Status=status,
    )
    db.add(rental)
    db.flush()
    return rental
