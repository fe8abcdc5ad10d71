from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import JSON, DateTime, Enum, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base


class AppointmentStatus(str, enum.Enum):
    scheduled = "SCHEDULED"
    cancelled = "CANCELLED"
    completed = "COMPLETED"


class Appointment(Base):
    __tablename__ = "appointments"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    appointment_code: Mapped[str] = mapped_column(
        String(50), unique=True, index=True, nullable=False
    )
    patient_code: Mapped[str] = mapped_column(String(50), index=True, nullable=False)
    employee_code: Mapped[str] = mapped_column(String(50), nullable=False)
    room_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[AppointmentStatus] = mapped_column(
        Enum(AppointmentStatus, name="appointment_status"),
        default=AppointmentStatus.scheduled,
        nullable=False,
    )
    service_codes: Mapped[list] = mapped_column(JSON, nullable=False)
    plan_item_ids: Mapped[list] = mapped_column(JSON, nullable=False)
    participant_codes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
