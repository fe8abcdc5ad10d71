from __future__ import annotations

import logging
import math
from typing import Any

from sqlalchemy.orm import Session

from app.core.settings import Settings, settings as default_settings
from app.models.treatment_plan import ApprovalStatus, PlanItemStatus, TreatmentPlan
from app.schemas.appointment import AppointmentDraft, AppointmentRefOut
from app.schemas.caller import Caller
from app.schemas.treatment_plan import (
    BookingResultOut,
    CustomPlanCreate,
    PlanItemAdd,
    PlanItemUpdate,
    PlanDetailOut,
    PlanItemOut,
    PlanListFilters,
    PlanPageOut,
    PlanSummaryOut,
    TemplatePlanCreate,
)
from app.services import capabilities as caps
from app.services import rbac
from app.services.appointments import AppointmentGateway
from app.services.approval import ApprovalGate
from app.services.booking import BookingResult, ItemBookingCoordinator
from app.services.directory import ServiceDirectory, TemplateDirectory
from app.services.errors import ItemNotFound, PlanNotFound
from app.services.lifecycle import PlanLifecycleEngine
from app.services.notifications import LoggingNotificationPublisher, NotificationPublisher
from app.services.plan_store import PlanStore

logger = logging.getLogger("clinic_plans.service")


def to_detail(plan: TreatmentPlan) -> PlanDetailOut:
    return PlanDetailOut.model_validate(plan)


def to_summary(plan: TreatmentPlan) -> PlanSummaryOut:
    return PlanSummaryOut.model_validate(plan)


def to_booking_result(result: BookingResult) -> BookingResultOut:
    appointment = None
    if result.appointment is not None:
        appointment = AppointmentRefOut(
            appointment_code=result.appointment.appointment_code,
            start_time=result.appointment.start_time,
            status=result.appointment.status,
        )
    return BookingResultOut(
        appointment=appointment,
        booked_items=[PlanItemOut.model_validate(item) for item in result.booked_items],
        already_scheduled_item_ids=result.already_scheduled_item_ids,
        plan=to_detail(result.plan),
    )


class TreatmentPlanService:
    """Entry point for callers: permission checks, component calls, DTOs."""

    def __init__(
        self,
        db: Session,
        *,
        gateway: AppointmentGateway,
        directory: ServiceDirectory | None = None,
        templates: TemplateDirectory | None = None,
        notifier: NotificationPublisher | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.db = db
        self.settings = settings or default_settings
        self.store = PlanStore(db)
        self.lifecycle = PlanLifecycleEngine(
            db,
            store=self.store,
            directory=directory,
            templates=templates,
            readiness_policy=self.settings.item_readiness_policy,
            plan_code_prefix=self.settings.plan_code_prefix,
        )
        self.approval = ApprovalGate(
            db, store=self.store, max_retries=self.settings.conflict_max_retries
        )
        self.booking = ItemBookingCoordinator(
            db,
            gateway,
            store=self.store,
            max_retries=self.settings.conflict_max_retries,
            persist_retries=self.settings.booking_persist_retries,
            timeout=self.settings.appointment_timeout_seconds,
        )
        self.notifier = notifier or LoggingNotificationPublisher()

    def _notify(self, event: str, payload: dict[str, Any]) -> None:
        try:
            self.notifier.publish(event, payload)
        except Exception:
            logger.exception("Notification %s failed", event)

    def _plan_for(self, caller: Caller, plan_code: str) -> TreatmentPlan:
        plan = self.store.get_plan(plan_code)
        if plan is None:
            raise PlanNotFound(plan_code)
        rbac.ensure_can_view(caller, plan)
        return plan

    def _plan_to_modify(self, caller: Caller, plan_code: str) -> TreatmentPlan:
        plan = self.store.get_plan(plan_code)
        if plan is None:
            raise PlanNotFound(plan_code)
        rbac.ensure_can_modify(caller, plan)
        return plan

    def _item_to_modify(self, caller: Caller, item_id: int) -> None:
        item = self.store.get_item(item_id)
        if item is None:
            raise ItemNotFound(item_id)
        rbac.ensure_can_modify(caller, item.plan)

    def create_custom_plan(
        self, caller: Caller, patient_code: str, payload: CustomPlanCreate
    ) -> PlanDetailOut:
        caps.require_capability(caller, caps.CREATE)
        rbac.ensure_not_patient(caller)
        plan = self.lifecycle.create_custom_plan(caller, patient_code, payload)
        return to_detail(plan)

    def create_from_template(
        self, caller: Caller, patient_code: str, payload: TemplatePlanCreate
    ) -> PlanDetailOut:
        caps.require_capability(caller, caps.CREATE)
        rbac.ensure_not_patient(caller)
        plan = self.lifecycle.create_from_template(caller, patient_code, payload)
        return to_detail(plan)

    def get_plan_detail(
        self, caller: Caller, plan_code: str, patient_code: str | None = None
    ) -> PlanDetailOut:
        caps.require_capability(caller, caps.VIEW_OWN, caps.VIEW_ALL)
        plan = self.store.get_plan(plan_code)
        if plan is None or (patient_code is not None and plan.patient_code != patient_code):
            raise PlanNotFound(plan_code)
        rbac.ensure_can_view(caller, plan)
        return to_detail(plan)

    def list_plans(
        self,
        caller: Caller,
        filters: PlanListFilters | None = None,
        page: int = 0,
        size: int | None = None,
    ) -> PlanPageOut:
        conditions = rbac.list_conditions(caller, filters)
        page = max(page, 0)
        size = size or self.settings.default_page_size
        size = max(1, min(size, self.settings.max_page_size))
        plans, total = self.store.query_plans(conditions, page=page, size=size)
        return PlanPageOut(
            items=[to_summary(plan) for plan in plans],
            total=total,
            page=page,
            size=size,
            total_pages=math.ceil(total / size) if total else 0,
        )

    def submit_for_review(
        self, caller: Caller, plan_code: str, notes: str | None = None
    ) -> PlanDetailOut:
        caps.require_capability(caller, caps.CREATE, caps.UPDATE)
        self._plan_to_modify(caller, plan_code)
        plan = self.approval.submit(plan_code, caller, notes)
        self._notify(
            "treatment_plan.submitted",
            {"plan_code": plan.plan_code, "submitted_by": caller.identity},
        )
        return to_detail(plan)

    def approve(self, caller: Caller, plan_code: str, notes: str | None = None) -> PlanDetailOut:
        caps.require_capability(caller, caps.APPROVE)
        rbac.ensure_not_patient(caller)
        plan = self.approval.approve(plan_code, caller, notes)
        self._notify(
            "treatment_plan.approved",
            {
                "plan_code": plan.plan_code,
                "patient_code": plan.patient_code,
                "doctor_employee_code": plan.doctor_employee_code,
                "approved_by": plan.approved_by,
            },
        )
        return to_detail(plan)

    def reject(self, caller: Caller, plan_code: str, reason: str | None) -> PlanDetailOut:
        caps.require_capability(caller, caps.APPROVE)
        rbac.ensure_not_patient(caller)
        plan = self.approval.reject(plan_code, caller, reason)
        self._notify(
            "treatment_plan.rejected",
            {
                "plan_code": plan.plan_code,
                "doctor_employee_code": plan.doctor_employee_code,
                "reason": plan.rejection_reason,
            },
        )
        return to_detail(plan)

    def resubmit(self, caller: Caller, plan_code: str) -> PlanDetailOut:
        caps.require_capability(caller, caps.CREATE, caps.UPDATE)
        self._plan_to_modify(caller, plan_code)
        plan = self.approval.resubmit(plan_code, caller)
        return to_detail(plan)

    def override_approval(
        self, caller: Caller, plan_code: str, reason: str | None = None
    ) -> PlanDetailOut:
        rbac.ensure_admin(caller)
        plan = self.approval.override(plan_code, caller, reason)
        self._notify(
            "treatment_plan.approval_overridden",
            {"plan_code": plan.plan_code, "overridden_by": caller.identity},
        )
        return to_detail(plan)

    def book_items(
        self,
        caller: Caller,
        plan_code: str,
        item_ids: list[int],
        draft: AppointmentDraft,
        *,
        retry: bool = False,
    ) -> BookingResultOut:
        caps.require_capability(caller, caps.BOOK_FROM_PLAN)
        self._plan_for(caller, plan_code)
        result = self.booking.book_items(caller, plan_code, item_ids, draft, retry=retry)
        if result.appointment is not None:
            self._notify(
                "treatment_plan.items_booked",
                {
                    "plan_code": plan_code,
                    "appointment_code": result.appointment.appointment_code,
                    "item_ids": [item.id for item in result.booked_items],
                },
            )
        return to_booking_result(result)

    def add_items(
        self,
        caller: Caller,
        plan_code: str,
        phase_number: int,
        items: list[PlanItemAdd],
        *,
        auto_submit: bool = False,
    ) -> PlanDetailOut:
        caps.require_capability(caller, caps.UPDATE)
        self._plan_to_modify(caller, plan_code)
        plan, added = self.lifecycle.add_items(
            caller, plan_code, phase_number, items, auto_submit=auto_submit
        )
        if auto_submit and plan.approval_status == ApprovalStatus.pending_approval:
            self._notify(
                "treatment_plan.submitted",
                {
                    "plan_code": plan.plan_code,
                    "submitted_by": caller.identity,
                    "added_item_ids": [item.id for item in added],
                },
            )
        return to_detail(plan)

    def update_item(self, caller: Caller, item_id: int, changes: PlanItemUpdate) -> PlanDetailOut:
        caps.require_capability(caller, caps.UPDATE)
        self._item_to_modify(caller, item_id)
        item = self.lifecycle.update_item(caller, item_id, changes)
        return to_detail(item.plan)

    def delete_item(self, caller: Caller, item_id: int) -> PlanDetailOut:
        caps.require_capability(caller, caps.UPDATE)
        self._item_to_modify(caller, item_id)
        plan = self.lifecycle.delete_item(caller, item_id)
        return to_detail(plan)

    def update_item_status(
        self,
        caller: Caller,
        item_id: int,
        status: PlanItemStatus,
        notes: str | None = None,
    ) -> PlanItemOut:
        caps.require_capability(caller, caps.UPDATE)
        self._item_to_modify(caller, item_id)
        item = self.lifecycle.update_item_status(caller, item_id, status, notes)
        return PlanItemOut.model_validate(item)

    def cancel_plan(
        self, caller: Caller, plan_code: str, reason: str | None = None
    ) -> PlanDetailOut:
        caps.require_capability(caller, caps.UPDATE)
        self._plan_to_modify(caller, plan_code)
        plan = self.lifecycle.cancel_plan(caller, plan_code, reason)
        return to_detail(plan)

    def delete_plan(self, caller: Caller, plan_code: str) -> None:
        rbac.ensure_admin(caller)
        caps.require_capability(caller, caps.DELETE)
        self.lifecycle.delete_plan(caller, plan_code)
