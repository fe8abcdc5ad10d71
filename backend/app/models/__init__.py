from app.models.base import Base
from app.models.audit_log import AuditLog
from app.models.catalog import DentalService, Employee, Patient, Specialization
from app.models.template import TemplatePhase, TemplatePhaseService, TreatmentPlanTemplate
from app.models.appointment import Appointment, AppointmentStatus
from app.models.treatment_plan import (
    ApprovalStatus,
    PaymentType,
    PhaseStatus,
    PlanItem,
    PlanItemAppointment,
    PlanItemStatus,
    PlanPhase,
    TreatmentPlan,
    TreatmentPlanStatus,
)

__all__ = [
    "Base",
    "AuditLog",
    "Specialization",
    "DentalService",
    "Employee",
    "Patient",
    "TreatmentPlanTemplate",
    "TemplatePhase",
    "TemplatePhaseService",
    "Appointment",
    "AppointmentStatus",
    "TreatmentPlan",
    "TreatmentPlanStatus",
    "ApprovalStatus",
    "PaymentType",
    "PlanPhase",
    "PhaseStatus",
    "PlanItem",
    "PlanItemStatus",
    "PlanItemAppointment",
]
