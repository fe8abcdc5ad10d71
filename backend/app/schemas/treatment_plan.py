from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.treatment_plan import (
    ApprovalStatus,
    PaymentType,
    PhaseStatus,
    PlanItemStatus,
    TreatmentPlanStatus,
)
from app.schemas.appointment import AppointmentDraft, AppointmentRefOut


class PlanItemCreate(BaseModel):
    service_code: str = Field(min_length=1)
    sequence_number: int = Field(ge=1)
    quantity: int = Field(default=1, ge=1)
    price: Optional[int] = None
    estimated_time_minutes: Optional[int] = Field(default=None, ge=0)
    ready_for_booking: Optional[bool] = None


class PlanPhaseCreate(BaseModel):
    phase_number: int = Field(ge=1)
    phase_name: str = Field(min_length=1)
    estimated_duration_days: Optional[int] = Field(default=None, ge=0)
    items: list[PlanItemCreate] = Field(default_factory=list)


class CustomPlanCreate(BaseModel):
    plan_name: str = Field(min_length=1)
    doctor_employee_code: str = Field(min_length=1)
    payment_type: Optional[PaymentType] = None
    discount_amount: int = Field(default=0, ge=0)
    start_date: Optional[date] = None
    expected_end_date: Optional[date] = None
    phases: list[PlanPhaseCreate] = Field(default_factory=list)


class TemplatePlanCreate(BaseModel):
    source_template_code: str = Field(min_length=1)
    doctor_employee_code: str = Field(min_length=1)
    plan_name_override: Optional[str] = None
    payment_type: Optional[PaymentType] = None
    discount_amount: int = Field(default=0, ge=0)
    start_date: Optional[date] = None


class LinkedAppointmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    appointment_code: str
    linked_at: Optional[datetime] = None


class PlanItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    item_id: int
    sequence_number: int
    item_name: str
    service_code: str
    quantity: int
    price: int
    estimated_time_minutes: Optional[int] = None
    status: PlanItemStatus
    completed_at: Optional[datetime] = None
    linked_appointments: list[LinkedAppointmentOut] = Field(default_factory=list)


class PlanPhaseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    phase_number: int
    phase_name: str
    estimated_duration_days: Optional[int] = None
    status: PhaseStatus
    completed_at: Optional[datetime] = None
    items: list[PlanItemOut] = Field(default_factory=list)


class ApprovalMetadataOut(BaseModel):
    approved_by: str
    approved_at: datetime
    notes: Optional[str] = None


class PlanSummaryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    plan_code: str
    plan_name: str
    patient_code: str
    patient_name: Optional[str] = None
    doctor_employee_code: str
    doctor_name: Optional[str] = None
    status: TreatmentPlanStatus
    approval_status: ApprovalStatus
    payment_type: Optional[PaymentType] = None
    total_price: int
    discount_amount: int
    final_cost: int
    start_date: Optional[date] = None
    expected_end_date: Optional[date] = None
    created_at: Optional[datetime] = None


class PlanDetailOut(PlanSummaryOut):
    created_by: str
    source_template_code: Optional[str] = None
    submit_notes: Optional[str] = None
    approval_metadata: Optional[ApprovalMetadataOut] = None
    rejection_reason: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    phases: list[PlanPhaseOut] = Field(default_factory=list)


class PlanPageOut(BaseModel):
    items: list[PlanSummaryOut]
    total: int
    page: int
    size: int
    total_pages: int


class PlanListFilters(BaseModel):
    status: Optional[TreatmentPlanStatus] = None
    approval_status: Optional[ApprovalStatus] = None
    patient_code: Optional[str] = None
    doctor_employee_code: Optional[str] = None
    search_term: Optional[str] = None


class SubmitRequest(BaseModel):
    notes: Optional[str] = None


class ApproveRequest(BaseModel):
    notes: Optional[str] = None


class RejectRequest(BaseModel):
    reason: Optional[str] = None


class OverrideRequest(BaseModel):
    reason: Optional[str] = None


class CancelPlanRequest(BaseModel):
    reason: Optional[str] = None


class ItemStatusUpdate(BaseModel):
    status: PlanItemStatus
    notes: Optional[str] = None


class PlanItemAdd(BaseModel):
    service_code: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1)
    price: Optional[int] = Field(default=None, ge=0)
    estimated_time_minutes: Optional[int] = Field(default=None, ge=0)
    ready_for_booking: Optional[bool] = None


class AddItemsRequest(BaseModel):
    phase_number: int = Field(ge=1)
    items: list[PlanItemAdd] = Field(default_factory=list)
    auto_submit: bool = False


class PlanItemUpdate(BaseModel):
    item_name: Optional[str] = Field(default=None, min_length=1)
    quantity: Optional[int] = Field(default=None, ge=1)
    price: Optional[int] = Field(default=None, ge=0)
    estimated_time_minutes: Optional[int] = Field(default=None, ge=0)


class BookItemsRequest(BaseModel):
    item_ids: list[int] = Field(default_factory=list)
    appointment: AppointmentDraft
    retry: bool = False


class BookingResultOut(BaseModel):
    appointment: Optional[AppointmentRefOut] = None
    booked_items: list[PlanItemOut] = Field(default_factory=list)
    already_scheduled_item_ids: list[int] = Field(default_factory=list)
    plan: PlanDetailOut
