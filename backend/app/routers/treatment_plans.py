from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from app.deps import get_current_caller, get_treatment_plan_service
from app.models.treatment_plan import ApprovalStatus, TreatmentPlanStatus
from app.schemas.caller import Caller
from app.schemas.treatment_plan import (
    AddItemsRequest,
    ApproveRequest,
    BookingResultOut,
    BookItemsRequest,
    CancelPlanRequest,
    CustomPlanCreate,
    ItemStatusUpdate,
    OverrideRequest,
    PlanDetailOut,
    PlanItemOut,
    PlanItemUpdate,
    PlanListFilters,
    PlanPageOut,
    RejectRequest,
    SubmitRequest,
    TemplatePlanCreate,
)
from app.services.treatment_plans import TreatmentPlanService

router = APIRouter(prefix="/treatment-plans", tags=["treatment-plans"])
patient_router = APIRouter(
    prefix="/patients/{patient_code}/treatment-plans", tags=["treatment-plans"]
)
item_router = APIRouter(prefix="/patient-plan-items", tags=["treatment-plans"])


@patient_router.post("", response_model=PlanDetailOut, status_code=status.HTTP_201_CREATED)
def create_plan_from_template(
    patient_code: str,
    payload: TemplatePlanCreate,
    caller: Caller = Depends(get_current_caller),
    service: TreatmentPlanService = Depends(get_treatment_plan_service),
):
    return service.create_from_template(caller, patient_code, payload)


@patient_router.post("/custom", response_model=PlanDetailOut, status_code=status.HTTP_201_CREATED)
def create_custom_plan(
    patient_code: str,
    payload: CustomPlanCreate,
    caller: Caller = Depends(get_current_caller),
    service: TreatmentPlanService = Depends(get_treatment_plan_service),
):
    return service.create_custom_plan(caller, patient_code, payload)


@patient_router.get("/{plan_code}", response_model=PlanDetailOut)
def get_patient_plan(
    patient_code: str,
    plan_code: str,
    caller: Caller = Depends(get_current_caller),
    service: TreatmentPlanService = Depends(get_treatment_plan_service),
):
    return service.get_plan_detail(caller, plan_code, patient_code=patient_code)


@router.get("", response_model=PlanPageOut)
def list_plans(
    caller: Caller = Depends(get_current_caller),
    service: TreatmentPlanService = Depends(get_treatment_plan_service),
    plan_status: Optional[TreatmentPlanStatus] = Query(default=None, alias="status"),
    approval_status: Optional[ApprovalStatus] = Query(default=None),
    patient_code: Optional[str] = Query(default=None),
    doctor_employee_code: Optional[str] = Query(default=None),
    search_term: Optional[str] = Query(default=None),
    page: int = Query(default=0, ge=0),
    size: Optional[int] = Query(default=None, ge=1),
):
    filters = PlanListFilters(
        status=plan_status,
        approval_status=approval_status,
        patient_code=patient_code,
        doctor_employee_code=doctor_employee_code,
        search_term=search_term,
    )
    return service.list_plans(caller, filters, page=page, size=size)


@router.get("/{plan_code}", response_model=PlanDetailOut)
def get_plan(
    plan_code: str,
    caller: Caller = Depends(get_current_caller),
    service: TreatmentPlanService = Depends(get_treatment_plan_service),
):
    return service.get_plan_detail(caller, plan_code)


@router.post("/{plan_code}/submit", response_model=PlanDetailOut)
def submit_plan(
    plan_code: str,
    payload: SubmitRequest,
    caller: Caller = Depends(get_current_caller),
    service: TreatmentPlanService = Depends(get_treatment_plan_service),
):
    return service.submit_for_review(caller, plan_code, payload.notes)


@router.post("/{plan_code}/approve", response_model=PlanDetailOut)
def approve_plan(
    plan_code: str,
    payload: ApproveRequest,
    caller: Caller = Depends(get_current_caller),
    service: TreatmentPlanService = Depends(get_treatment_plan_service),
):
    return service.approve(caller, plan_code, payload.notes)


@router.post("/{plan_code}/reject", response_model=PlanDetailOut)
def reject_plan(
    plan_code: str,
    payload: RejectRequest,
    caller: Caller = Depends(get_current_caller),
    service: TreatmentPlanService = Depends(get_treatment_plan_service),
):
    return service.reject(caller, plan_code, payload.reason)


@router.post("/{plan_code}/return-to-draft", response_model=PlanDetailOut)
def return_plan_to_draft(
    plan_code: str,
    caller: Caller = Depends(get_current_caller),
    service: TreatmentPlanService = Depends(get_treatment_plan_service),
):
    return service.resubmit(caller, plan_code)


@router.post("/{plan_code}/override", response_model=PlanDetailOut)
def override_plan_approval(
    plan_code: str,
    payload: OverrideRequest,
    caller: Caller = Depends(get_current_caller),
    service: TreatmentPlanService = Depends(get_treatment_plan_service),
):
    return service.override_approval(caller, plan_code, payload.reason)


@router.post("/{plan_code}/book", response_model=BookingResultOut)
def book_plan_items(
    plan_code: str,
    payload: BookItemsRequest,
    caller: Caller = Depends(get_current_caller),
    service: TreatmentPlanService = Depends(get_treatment_plan_service),
):
    return service.book_items(
        caller, plan_code, payload.item_ids, payload.appointment, retry=payload.retry
    )


@router.post("/{plan_code}/cancel", response_model=PlanDetailOut)
def cancel_plan(
    plan_code: str,
    payload: CancelPlanRequest,
    caller: Caller = Depends(get_current_caller),
    service: TreatmentPlanService = Depends(get_treatment_plan_service),
):
    return service.cancel_plan(caller, plan_code, payload.reason)


@router.post(
    "/{plan_code}/items", response_model=PlanDetailOut, status_code=status.HTTP_201_CREATED
)
def add_plan_items(
    plan_code: str,
    payload: AddItemsRequest,
    caller: Caller = Depends(get_current_caller),
    service: TreatmentPlanService = Depends(get_treatment_plan_service),
):
    return service.add_items(
        caller, plan_code, payload.phase_number, payload.items, auto_submit=payload.auto_submit
    )


@router.delete("/{plan_code}", status_code=status.HTTP_204_NO_CONTENT)
def delete_plan(
    plan_code: str,
    caller: Caller = Depends(get_current_caller),
    service: TreatmentPlanService = Depends(get_treatment_plan_service),
):
    service.delete_plan(caller, plan_code)


@item_router.patch("/{item_id}/status", response_model=PlanItemOut)
def update_item_status(
    item_id: int,
    payload: ItemStatusUpdate,
    caller: Caller = Depends(get_current_caller),
    service: TreatmentPlanService = Depends(get_treatment_plan_service),
):
    return service.update_item_status(caller, item_id, payload.status, payload.notes)


@item_router.patch("/{item_id}", response_model=PlanDetailOut)
def update_plan_item(
    item_id: int,
    payload: PlanItemUpdate,
    caller: Caller = Depends(get_current_caller),
    service: TreatmentPlanService = Depends(get_treatment_plan_service),
):
    return service.update_item(caller, item_id, payload)


@item_router.delete("/{item_id}", response_model=PlanDetailOut)
def delete_plan_item(
    item_id: int,
    caller: Caller = Depends(get_current_caller),
    service: TreatmentPlanService = Depends(get_treatment_plan_service),
):
    return service.delete_item(caller, item_id)
