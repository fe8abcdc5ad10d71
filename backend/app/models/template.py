from __future__ import annotations

from sqlalchemy import Boolean, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base


class TreatmentPlanTemplate(Base):
    __tablename__ = "treatment_plan_templates"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    template_code: Mapped[str] = mapped_column(String(50), unique=True, index=True, nullable=False)
    template_name: Mapped[str] = mapped_column(String(200), nullable=False)
    estimated_duration_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    specialization_id: Mapped[int | None] = mapped_column(
        ForeignKey("specializations.id"), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    phases = relationship(
        "TemplatePhase",
        back_populates="template",
        cascade="all, delete-orphan",
        order_by="TemplatePhase.phase_number",
        lazy="selectin",
    )


class TemplatePhase(Base):
    __tablename__ = "template_phases"
    __table_args__ = (UniqueConstraint("template_id", "phase_number"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    template_id: Mapped[int] = mapped_column(
        ForeignKey("treatment_plan_templates.id"), nullable=False
    )
    phase_number: Mapped[int] = mapped_column(Integer, nullable=False)
    phase_name: Mapped[str] = mapped_column(String(200), nullable=False)
    estimated_duration_days: Mapped[int | None] = mapped_column(Integer, nullable=True)

    template = relationship("TreatmentPlanTemplate", back_populates="phases")
    services = relationship(
        "TemplatePhaseService",
        back_populates="phase",
        cascade="all, delete-orphan",
        order_by="TemplatePhaseService.sequence_number",
        lazy="selectin",
    )


class TemplatePhaseService(Base):
    __tablename__ = "template_phase_services"
    __table_args__ = (UniqueConstraint("phase_id", "sequence_number"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    phase_id: Mapped[int] = mapped_column(ForeignKey("template_phases.id"), nullable=False)
    service_code: Mapped[str] = mapped_column(
        ForeignKey("dental_services.service_code"), nullable=False
    )
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    estimated_time_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    phase = relationship("TemplatePhase", back_populates="services")
