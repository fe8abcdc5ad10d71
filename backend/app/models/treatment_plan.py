from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import (
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import AuditMixin, Base, SoftDeleteMixin


class TreatmentPlanStatus(str, enum.Enum):
    draft = "DRAFT"
    in_progress = "IN_PROGRESS"
    completed = "COMPLETED"
    cancelled = "CANCELLED"


class ApprovalStatus(str, enum.Enum):
    draft = "DRAFT"
    pending_approval = "PENDING_APPROVAL"
    approved = "APPROVED"
    rejected = "REJECTED"


class PhaseStatus(str, enum.Enum):
    pending = "PENDING"
    in_progress = "IN_PROGRESS"
    completed = "COMPLETED"


class PlanItemStatus(str, enum.Enum):
    pending = "PENDING"
    ready_for_booking = "READY_FOR_BOOKING"
    scheduled = "SCHEDULED"
    completed = "COMPLETED"
    cancelled = "CANCELLED"


class PaymentType(str, enum.Enum):
    full = "FULL"
    phased = "PHASED"
    installment = "INSTALLMENT"


class TreatmentPlan(Base, AuditMixin, SoftDeleteMixin):
    __tablename__ = "treatment_plans"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    plan_code: Mapped[str] = mapped_column(String(50), unique=True, index=True, nullable=False)
    plan_name: Mapped[str] = mapped_column(String(255), nullable=False)
    patient_code: Mapped[str] = mapped_column(
        ForeignKey("patients.patient_code"), index=True, nullable=False
    )
    doctor_employee_code: Mapped[str] = mapped_column(
        ForeignKey("employees.employee_code"), index=True, nullable=False
    )
    source_template_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[TreatmentPlanStatus] = mapped_column(
        Enum(TreatmentPlanStatus, name="treatment_plan_status"),
        default=TreatmentPlanStatus.in_progress,
        nullable=False,
    )
    approval_status: Mapped[ApprovalStatus] = mapped_column(
        Enum(ApprovalStatus, name="treatment_plan_approval_status"),
        default=ApprovalStatus.draft,
        nullable=False,
    )
    payment_type: Mapped[PaymentType | None] = mapped_column(
        Enum(PaymentType, name="treatment_plan_payment_type"), nullable=True
    )
    total_price: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    discount_amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    final_cost: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    expected_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    submit_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String(50), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approval_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(50), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    patient = relationship("Patient", lazy="joined")
    doctor = relationship("Employee", lazy="joined")
    phases = relationship(
        "PlanPhase",
        back_populates="plan",
        cascade="all, delete-orphan",
        order_by="PlanPhase.phase_number",
        lazy="selectin",
    )

    @property
    def items(self) -> list["PlanItem"]:
        return [item for phase in self.phases for item in phase.items]

    @property
    def patient_name(self) -> str | None:
        return self.patient.full_name if self.patient else None

    @property
    def doctor_name(self) -> str | None:
        return self.doctor.full_name if self.doctor else None

    @property
    def approval_metadata(self) -> dict | None:
        if not self.approved_by or not self.approved_at:
            return None
        return {
            "approved_by": self.approved_by,
            "approved_at": self.approved_at,
            "notes": self.approval_notes,
        }


class PlanPhase(Base):
    __tablename__ = "treatment_plan_phases"
    __table_args__ = (
        UniqueConstraint("plan_id", "phase_number", name="uq_treatment_plan_phases_number"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    plan_id: Mapped[int] = mapped_column(ForeignKey("treatment_plans.id"), nullable=False)
    phase_number: Mapped[int] = mapped_column(Integer, nullable=False)
    phase_name: Mapped[str] = mapped_column(String(200), nullable=False)
    estimated_duration_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[PhaseStatus] = mapped_column(
        Enum(PhaseStatus, name="treatment_plan_phase_status"),
        default=PhaseStatus.pending,
        nullable=False,
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    plan = relationship("TreatmentPlan", back_populates="phases")
    items = relationship(
        "PlanItem",
        back_populates="phase",
        cascade="all, delete-orphan",
        order_by="PlanItem.sequence_number",
        lazy="selectin",
    )


class PlanItem(Base):
    __tablename__ = "treatment_plan_items"
    __table_args__ = (
        UniqueConstraint("phase_id", "sequence_number", name="uq_treatment_plan_items_sequence"),
        Index("ix_treatment_plan_items_plan_status", "plan_id", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    plan_id: Mapped[int] = mapped_column(ForeignKey("treatment_plans.id"), nullable=False)
    phase_id: Mapped[int] = mapped_column(ForeignKey("treatment_plan_phases.id"), nullable=False)
    service_code: Mapped[str] = mapped_column(
        ForeignKey("dental_services.service_code"), nullable=False
    )
    item_name: Mapped[str] = mapped_column(String(255), nullable=False)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    price: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    estimated_time_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[PlanItemStatus] = mapped_column(
        Enum(PlanItemStatus, name="treatment_plan_item_status"),
        default=PlanItemStatus.pending,
        nullable=False,
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    plan = relationship("TreatmentPlan")
    phase = relationship("PlanPhase", back_populates="items")
    linked_appointments = relationship(
        "PlanItemAppointment",
        back_populates="item",
        cascade="all, delete-orphan",
        order_by="PlanItemAppointment.id",
        lazy="selectin",
    )

    @property
    def item_id(self) -> int:
        return self.id

    @property
    def appointment_codes(self) -> list[str]:
        return [link.appointment_code for link in self.linked_appointments]


class PlanItemAppointment(Base):
    __tablename__ = "treatment_plan_item_appointments"
    __table_args__ = (
        UniqueConstraint("item_id", "appointment_code", name="uq_plan_item_appointment"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    item_id: Mapped[int] = mapped_column(ForeignKey("treatment_plan_items.id"), nullable=False)
    appointment_code: Mapped[str] = mapped_column(String(50), index=True, nullable=False)
    linked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    linked_by: Mapped[str | None] = mapped_column(String(50), nullable=True)

    item = relationship("PlanItem", back_populates="linked_appointments")
