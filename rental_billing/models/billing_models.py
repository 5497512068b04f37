from sqlalchemy import JSON, Boolean, CheckConstraint, Column, Date, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from rental_billing.db.base import Base


class MedicalDevice(Base):
    __tablename__ = "MedicalDevices"

    MedicalDeviceID = Column(Integer, primary_key=True)
    Name = Column(String(255), nullable=False)
    DeviceCode = Column(String(50))
    Status = Column(String(20), default="ACTIVE")
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Rentals = relationship("Rental", back_populates="MedicalDevice")
    Diagnostics = relationship("Diagnostic", back_populates="MedicalDevice")
    RepairLogs = relationship("RepairLog", back_populates="MedicalDevice")


class Rental(Base):
    __tablename__ = "Rentals"
    __table_args__ = (
        CheckConstraint(
            "(PatientID IS NULL) <> (CompanyID IS NULL)",
            name="ck_rental_single_customer",
        ),
    )

    RentalID = Column(Integer, primary_key=True)
    RentalCode = Column(String(50))
    PatientID = Column(Integer)
    CompanyID = Column(Integer)
    MedicalDeviceID = Column(Integer, ForeignKey("MedicalDevices.MedicalDeviceID"), nullable=False)
    StartDate = Column(Date, nullable=False)
    EndDate = Column(Date)
    MonthlyRate = Column(Numeric(10, 2), nullable=False)
    Status = Column(String(20), default="ACTIVE")
    Notes = Column(String(1000))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    MedicalDevice = relationship("MedicalDevice", back_populates="Rentals")
    Bonds = relationship("CNAMBond", back_populates="Rental")
    Periods = relationship(
        "RentalPeriod",
        back_populates="Rental",
        order_by="RentalPeriod.StartDate",
        cascade="all, delete-orphan",
    )


class CNAMNomenclature(Base):
    __tablename__ = "CNAMNomenclature"

    NomenclatureID = Column(Integer, primary_key=True)
    BondType = Column(String(40), nullable=False, unique=True)
    Category = Column(String(20), nullable=False, default="LOCATION")
    Amount = Column(Numeric(10, 2), nullable=False)
    MonthlyRate = Column(Numeric(10, 2), nullable=False, default=0)
    Description = Column(String(500))
    IsActive = Column(Boolean, default=True)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())


class CNAMBond(Base):
    __tablename__ = "CNAMBonds"

    BondID = Column(Integer, primary_key=True)
    BondNumber = Column(String(40), nullable=False, unique=True)
    BondType = Column(String(40), nullable=False)
    Category = Column(String(20), nullable=False, default="LOCATION")
    Amount = Column(Numeric(10, 2), nullable=False)
    MonthlyRate = Column(Numeric(10, 2), nullable=False, default=0)
    Status = Column(String(20), default="PENDING")
    DossierNumber = Column(String(100))
    StartDate = Column(Date)
    EndDate = Column(Date)
    RenewalReminderDays = Column(Integer, default=30)
    Notes = Column(String(1000))
    RentalID = Column(Integer, ForeignKey("Rentals.RentalID"))
    PatientID = Column(Integer)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Rental = relationship("Rental", back_populates="Bonds")
    Periods = relationship("RentalPeriod", back_populates="Bond")


class RentalPeriod(Base):
    __tablename__ = "RentalPeriods"
    __table_args__ = (
        CheckConstraint("EndDate >= StartDate", name="ck_period_window"),
    )

    PeriodID = Column(Integer, primary_key=True)
    RentalID = Column(Integer, ForeignKey("Rentals.RentalID"), nullable=False)
    CNAMBondID = Column(Integer, ForeignKey("CNAMBonds.BondID"))
    StartDate = Column(Date, nullable=False)
    EndDate = Column(Date, nullable=False)
    ExpectedAmount = Column(Numeric(10, 2), nullable=False)
    CNAMExpectedAmount = Column(Numeric(10, 2))
    PatientExpectedAmount = Column(Numeric(10, 2))
    IsGapPeriod = Column(Boolean, default=False)
    GapReason = Column(String(500))
    GapResolvedAt = Column(DateTime)
    GapResolutionNote = Column(String(500))
    Notes = Column(String(1000))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Rental = relationship("Rental", back_populates="Periods")
    Bond = relationship("CNAMBond", back_populates="Periods")
    Payments = relationship("Payment", back_populates="Period")


class Payment(Base):
    __tablename__ = "Payments"

    PaymentID = Column(Integer, primary_key=True)
    PaymentCode = Column(String(50))
    RentalPeriodID = Column(Integer, ForeignKey("RentalPeriods.PeriodID"), nullable=False)
    Amount = Column(Numeric(10, 2), nullable=False)
    PaymentDate = Column(Date, nullable=False)
    PeriodStartDate = Column(Date)
    PeriodEndDate = Column(Date)
    Method = Column(String(20), nullable=False)
    Status = Column(String(20), default="PENDING")
    Notes = Column(String(500))
    CreatedDate = Column(DateTime, server_default=func.now())

    Period = relationship("RentalPeriod", back_populates="Payments")


class Diagnostic(Base):
    __tablename__ = "Diagnostics"

    DiagnosticID = Column(Integer, primary_key=True)
    DiagnosticCode = Column(String(50))
    MedicalDeviceID = Column(Integer, ForeignKey("MedicalDevices.MedicalDeviceID"))
    PatientID = Column(Integer)
    PerformedByID = Column(Integer)
    FollowUpDate = Column(Date)
    Status = Column(String(20), default="PENDING")
    CreatedDate = Column(DateTime, server_default=func.now())

    MedicalDevice = relationship("MedicalDevice", back_populates="Diagnostics")


class RepairLog(Base):
    __tablename__ = "RepairLogs"

    RepairLogID = Column(Integer, primary_key=True)
    MedicalDeviceID = Column(Integer, ForeignKey("MedicalDevices.MedicalDeviceID"), nullable=False)
    RepairDate = Column(Date, nullable=False)
    TechnicianID = Column(Integer)
    Description = Column(String(1000))
    CreatedDate = Column(DateTime, server_default=func.now())

    MedicalDevice = relationship("MedicalDevice", back_populates="RepairLogs")


class Notification(Base):
    __tablename__ = "Notifications"

    NotificationID = Column(Integer, primary_key=True)
    Title = Column(String(255), nullable=False)
    Message = Column(String(2000))
    Type = Column(String(40), nullable=False)
    Status = Column(String(20), default="PENDING")
    DueDate = Column(Date)
    UserID = Column(Integer)
    PatientID = Column(Integer)
    SourceEntityType = Column(String(40), nullable=False)
    SourceEntityID = Column(Integer, nullable=False)
    Metadata = Column(JSON)
    CreatedAt = Column(DateTime, server_default=func.now())
    ReadAt = Column(DateTime)


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())
