from datetime import date
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class NomenclatureUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    bondType: str
    category: Optional[Literal["LOCATION", "ACHAT"]] = None
    amount: Decimal
    monthlyRate: Optional[Decimal] = None
    description: Optional[str] = None
    isActive: Optional[bool] = None


class CreateBondDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    bondType: str
    bondNumber: Optional[str] = None
    category: Optional[Literal["LOCATION", "ACHAT"]] = None
    amount: Optional[Decimal] = None
    monthlyRate: Optional[Decimal] = None
    status: Optional[Literal["PENDING", "APPROUVE"]] = "PENDING"
    dossierNumber: Optional[str] = None
    startDate: Optional[date] = None
    endDate: Optional[date] = None
    renewalReminderDays: Optional[int] = 30
    notes: Optional[str] = None
    rentalID: Optional[int] = None
    patientID: Optional[int] = None
    splitByMonth: bool = False


class AmendBondDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: Optional[Literal["PENDING", "APPROUVE", "EXPIRED", "REJECTED"]] = None
    startDate: Optional[date] = None
    endDate: Optional[date] = None
    dossierNumber: Optional[str] = None
    notes: Optional[str] = None
    splitByMonth: bool = False
