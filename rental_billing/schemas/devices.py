from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict


class CreateRepairLogDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    medicalDeviceID: int
    repairDate: date
    technicianID: Optional[int] = None
    description: Optional[str] = None
