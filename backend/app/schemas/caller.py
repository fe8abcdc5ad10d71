import enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class CallerRole(str, enum.Enum):
    patient = "patient"
    employee = "employee"
    admin = "admin"


class Caller(BaseModel):
    """Verified identity handed over by the identity provider."""

    model_config = ConfigDict(frozen=True)

    subject: str
    role: CallerRole
    patient_code: Optional[str] = None
    employee_code: Optional[str] = None
    permissions: frozenset[str] = frozenset()

    @property
    def identity(self) -> str:
        if self.role == CallerRole.patient and self.patient_code:
            return self.patient_code
        if self.employee_code:
            return self.employee_code
        return self.subject
