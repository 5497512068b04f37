from datetime import date
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class CreateRentalDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    medicalDeviceID: int
    patientID: Optional[int] = None
    companyID: Optional[int] = None
    startDate: date
    endDate: Optional[date] = None
    monthlyRate: Decimal
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _single_customer(self):
        if (self.patientID is None) == (self.companyID is None):
            raise ValueError("Exactly one of patientID or companyID is required.")
        return self


class EndDateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    endDate: date
    splitByMonth: bool = False


class ReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    returnDate: Optional[date] = None
    notes: Optional[str] = None


class RecomputeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    effectiveDate: Optional[date] = None
    splitByMonth: bool = False


class UpdatePeriodDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    startDate: Optional[date] = None
    endDate: Optional[date] = None
    expectedAmount: Optional[Decimal] = None
    cnamExpectedAmount: Optional[Decimal] = None
    patientExpectedAmount: Optional[Decimal] = None
    isGapPeriod: Optional[bool] = None
    gapReason: Optional[str] = None
    notes: Optional[str] = None
    cnamBondId: Optional[int] = None


class ResolveGapRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    note: str
    operatorUserID: Optional[int] = None


class CreatePaymentDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rentalPeriodID: int
    amount: Decimal = Field(gt=0)
    paymentDate: date
    method: Literal["CNAM", "CASH", "CHEQUE", "TRAITE", "MANDAT", "VIREMENT"]
    status: Literal["PENDING", "COMPLETED", "PAID", "PARTIAL", "CANCELLED"] = "COMPLETED"
    periodStartDate: Optional[date] = None
    periodEndDate: Optional[date] = None
    paymentCode: Optional[str] = None
    notes: Optional[str] = None
