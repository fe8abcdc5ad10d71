from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class AppointmentDraft(BaseModel):
    employee_code: str = Field(min_length=1)
    start_time: datetime
    room_code: Optional[str] = None
    participant_codes: list[str] = Field(default_factory=list)
    notes: Optional[str] = None


class AppointmentRefOut(BaseModel):
    appointment_code: str
    start_time: Optional[datetime] = None
    status: Optional[str] = None
