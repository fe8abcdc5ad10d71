from __future__ import annotations

import logging
import secrets
from datetime import date, datetime, timedelta, timezone
from typing import Any

from sqlalchemy.orm import Session

from app.core.settings import ItemReadinessPolicy, settings
from app.models.treatment_plan import (
    ApprovalStatus,
    PhaseStatus,
    PlanItem,
    PlanItemStatus,
    PlanPhase,
    TreatmentPlan,
    TreatmentPlanStatus,
)
from app.schemas.caller import Caller
from app.schemas.treatment_plan import (
    CustomPlanCreate,
    PlanItemAdd,
    PlanItemCreate,
    PlanItemUpdate,
    PlanPhaseCreate,
    TemplatePlanCreate,
)
from app.services.audit import log_event
from app.services.directory import (
    ServiceDirectory,
    ServiceInfo,
    SqlServiceDirectory,
    SqlTemplateDirectory,
    TemplateDirectory,
)
from app.services.errors import (
    ConcurrencyConflict,
    InvalidTransition,
    ItemNotFound,
    PlanNotFound,
    PlanValidationError,
    SpecializationMismatch,
    TemplateNotFound,
)
from app.services.plan_store import PlanStore

logger = logging.getLogger("clinic_plans.lifecycle")

ITEM_TRANSITIONS: dict[PlanItemStatus, frozenset[PlanItemStatus]] = {
    PlanItemStatus.pending: frozenset(
        {PlanItemStatus.ready_for_booking, PlanItemStatus.cancelled}
    ),
    PlanItemStatus.ready_for_booking: frozenset(
        {PlanItemStatus.scheduled, PlanItemStatus.cancelled}
    ),
    PlanItemStatus.scheduled: frozenset(
        {PlanItemStatus.completed, PlanItemStatus.ready_for_booking}
    ),
    PlanItemStatus.completed: frozenset(),
    PlanItemStatus.cancelled: frozenset(),
}

CLOSED_ITEM_STATUSES = frozenset({PlanItemStatus.completed, PlanItemStatus.cancelled})

# Items past these states are tied to an appointment or a finished treatment.
LOCKED_ITEM_STATUSES = frozenset({PlanItemStatus.scheduled, PlanItemStatus.completed})

# Plans under review or approved are edited only by adding items.
FROZEN_APPROVAL_STATUSES = frozenset({ApprovalStatus.pending_approval, ApprovalStatus.approved})

PLAN_CODE_ATTEMPTS = 5


def _now() -> datetime:
    return datetime.now(timezone.utc)


def start_phases(items: list[PlanItem]) -> None:
    """Phases holding a freshly scheduled item are under way."""
    for item in items:
        if item.phase.status == PhaseStatus.pending:
            item.phase.status = PhaseStatus.in_progress


def recompute_totals(plan: TreatmentPlan) -> None:
    """Totals count every item that is not cancelled; the discount stays fixed."""
    total = sum(
        item.price * item.quantity
        for item in plan.items
        if item.status != PlanItemStatus.cancelled
    )
    plan.total_price = total
    plan.final_cost = max(total - plan.discount_amount, 0)


def _initial_item_status(
    policy: ItemReadinessPolicy, phase_number: int, item: PlanItemCreate | PlanItemAdd
) -> PlanItemStatus:
    if policy == ItemReadinessPolicy.first_phase and phase_number == 1:
        return PlanItemStatus.ready_for_booking
    if policy == ItemReadinessPolicy.caller_flag and item.ready_for_booking:
        return PlanItemStatus.ready_for_booking
    return PlanItemStatus.pending


def validate_structure(phases: list[PlanPhaseCreate]) -> None:
    if not phases:
        raise PlanValidationError("A plan needs at least one phase", code="no_phases")
    numbers = [phase.phase_number for phase in phases]
    duplicates = sorted({n for n in numbers if numbers.count(n) > 1})
    if duplicates:
        raise PlanValidationError(
            "Phase numbers must be unique",
            code="duplicate_phase_number",
            phase_numbers=duplicates,
        )
    if sorted(numbers) != list(range(1, len(numbers) + 1)):
        raise PlanValidationError(
            "Phase numbers must be contiguous starting at 1",
            code="non_contiguous_phases",
            phase_numbers=sorted(numbers),
        )
    for phase in phases:
        if not phase.items:
            raise PlanValidationError(
                f"Phase {phase.phase_number} has no items",
                code="empty_phase",
                phase_number=phase.phase_number,
            )
        sequences = [item.sequence_number for item in phase.items]
        repeated = sorted({n for n in sequences if sequences.count(n) > 1})
        if repeated:
            raise PlanValidationError(
                f"Sequence numbers repeat in phase {phase.phase_number}",
                code="duplicate_sequence_number",
                phase_number=phase.phase_number,
                sequence_numbers=repeated,
            )


def _ordered(phases: list[PlanPhaseCreate]) -> list[tuple[PlanPhaseCreate, list[PlanItemCreate]]]:
    return [
        (phase, sorted(phase.items, key=lambda item: item.sequence_number))
        for phase in sorted(phases, key=lambda phase: phase.phase_number)
    ]


class PlanLifecycleEngine:
    """Builds plan trees and moves items, phases and plans through their states."""

    def __init__(
        self,
        db: Session,
        *,
        store: PlanStore | None = None,
        directory: ServiceDirectory | None = None,
        templates: TemplateDirectory | None = None,
        readiness_policy: ItemReadinessPolicy | None = None,
        plan_code_prefix: str | None = None,
    ) -> None:
        self.db = db
        self.store = store or PlanStore(db)
        self.directory = directory or SqlServiceDirectory(db)
        self.templates = templates or SqlTemplateDirectory(db)
        self.readiness_policy = readiness_policy or settings.item_readiness_policy
        self.plan_code_prefix = plan_code_prefix or settings.plan_code_prefix

    def generate_plan_code(self, today: date | None = None) -> str:
        today = today or date.today()
        for _ in range(PLAN_CODE_ATTEMPTS):
            code = f"{self.plan_code_prefix}-{today:%Y%m%d}-{secrets.token_hex(3).upper()}"
            if not self.store.plan_code_exists(code):
                return code
        raise PlanValidationError("Could not allocate a unique plan code", code="plan_code_exhausted")

    def _resolve_service(self, service_code: str, **context: Any) -> ServiceInfo:
        service = self.directory.get_service(service_code)
        if service is None or not service.is_active:
            raise PlanValidationError(
                f"Unknown service {service_code}",
                code="unknown_service",
                service_code=service_code,
                **context,
            )
        return service

    def _resolve_services(self, phases: list[PlanPhaseCreate]) -> dict[str, ServiceInfo]:
        resolved: dict[str, ServiceInfo] = {}
        for phase, items in _ordered(phases):
            for item in items:
                if item.service_code not in resolved:
                    resolved[item.service_code] = self._resolve_service(
                        item.service_code,
                        phase_number=phase.phase_number,
                        sequence_number=item.sequence_number,
                    )
        return resolved

    def _check_doctor_covers(self, doctor_code: str, service_codes: list[str]) -> None:
        doctor_specializations = self.directory.get_employee_specializations(doctor_code)
        for service_code in service_codes:
            required = self.directory.resolve_required_specialization(service_code)
            if required is not None and required not in doctor_specializations:
                raise SpecializationMismatch(service_code, doctor_code)

    def _check_specializations(self, doctor_code: str, phases: list[PlanPhaseCreate]) -> None:
        self._check_doctor_covers(
            doctor_code,
            [item.service_code for _phase, items in _ordered(phases) for item in items],
        )

    def create_custom_plan(
        self,
        caller: Caller,
        patient_code: str,
        payload: CustomPlanCreate,
        *,
        source_template_code: str | None = None,
    ) -> TreatmentPlan:
        if not self.directory.patient_exists(patient_code):
            raise PlanValidationError(
                f"Patient {patient_code} not found", code="unknown_patient", patient_code=patient_code
            )
        doctor = self.directory.get_employee(payload.doctor_employee_code)
        if doctor is None or not doctor.is_active:
            raise PlanValidationError(
                f"Doctor {payload.doctor_employee_code} not found or inactive",
                code="unknown_doctor",
                employee_code=payload.doctor_employee_code,
            )
        validate_structure(payload.phases)
        services = self._resolve_services(payload.phases)
        self._check_specializations(doctor.employee_code, payload.phases)

        if (
            payload.start_date
            and payload.expected_end_date
            and payload.expected_end_date < payload.start_date
        ):
            raise PlanValidationError(
                "Expected end date cannot precede the start date", code="invalid_dates"
            )

        total_price = 0
        phases: list[PlanPhase] = []
        for phase_in, items_in in _ordered(payload.phases):
            phase = PlanPhase(
                phase_number=phase_in.phase_number,
                phase_name=phase_in.phase_name,
                estimated_duration_days=phase_in.estimated_duration_days,
                status=PhaseStatus.pending,
            )
            for item_in in items_in:
                service = services[item_in.service_code]
                price = item_in.price if item_in.price is not None else service.price
                total_price += price * item_in.quantity
                phase.items.append(
                    PlanItem(
                        service_code=service.service_code,
                        item_name=service.service_name,
                        sequence_number=item_in.sequence_number,
                        quantity=item_in.quantity,
                        price=price,
                        estimated_time_minutes=(
                            item_in.estimated_time_minutes
                            if item_in.estimated_time_minutes is not None
                            else service.default_duration_minutes
                        ),
                        status=_initial_item_status(
                            self.readiness_policy, phase_in.phase_number, item_in
                        ),
                    )
                )
            phases.append(phase)

        if payload.discount_amount > total_price:
            raise PlanValidationError(
                "Discount cannot exceed the plan total",
                code="discount_exceeds_total",
                discount_amount=payload.discount_amount,
                total_price=total_price,
            )

        plan = TreatmentPlan(
            plan_code=self.generate_plan_code(),
            plan_name=payload.plan_name.strip(),
            patient_code=patient_code,
            doctor_employee_code=doctor.employee_code,
            source_template_code=source_template_code,
            status=TreatmentPlanStatus.in_progress,
            approval_status=ApprovalStatus.draft,
            payment_type=payload.payment_type,
            total_price=total_price,
            discount_amount=payload.discount_amount,
            final_cost=total_price - payload.discount_amount,
            start_date=payload.start_date,
            expected_end_date=payload.expected_end_date,
            created_by=caller.identity,
            phases=phases,
        )
        for phase in plan.phases:
            for item in phase.items:
                item.plan = plan
        try:
            self.store.add_plan(plan)
            log_event(
                self.db,
                actor=caller,
                action="treatment_plan.created",
                entity_type="treatment_plan",
                entity_id=plan.plan_code,
                after_data={
                    "patient_code": plan.patient_code,
                    "doctor_employee_code": plan.doctor_employee_code,
                    "source_template_code": source_template_code,
                    "phases": len(plan.phases),
                    "items": len(plan.items),
                    "total_price": plan.total_price,
                },
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(
            "Plan %s created for patient %s by %s", plan.plan_code, patient_code, caller.identity
        )
        return plan

    def create_from_template(
        self, caller: Caller, patient_code: str, payload: TemplatePlanCreate
    ) -> TreatmentPlan:
        template = self.templates.resolve_template(payload.source_template_code)
        if template is None:
            raise TemplateNotFound(payload.source_template_code)
        if not template.is_active:
            raise PlanValidationError(
                f"Template {template.template_code} is inactive",
                code="inactive_template",
                template_code=template.template_code,
            )
        start = payload.start_date or date.today()
        expected_end = (
            start + timedelta(days=template.estimated_duration_days)
            if template.estimated_duration_days
            else None
        )
        phases = [
            PlanPhaseCreate(
                phase_number=index,
                phase_name=phase.phase_name,
                estimated_duration_days=phase.estimated_duration_days,
                items=[
                    PlanItemCreate(
                        service_code=entry.service_code,
                        sequence_number=position,
                        quantity=entry.quantity,
                        estimated_time_minutes=entry.estimated_time_minutes,
                    )
                    for position, entry in enumerate(
                        sorted(phase.services, key=lambda s: s.sequence_number), start=1
                    )
                ],
            )
            for index, phase in enumerate(
                sorted(template.phases, key=lambda p: p.phase_number), start=1
            )
        ]
        custom = CustomPlanCreate(
            plan_name=(payload.plan_name_override or "").strip() or template.template_name,
            doctor_employee_code=payload.doctor_employee_code,
            payment_type=payload.payment_type,
            discount_amount=payload.discount_amount,
            start_date=start,
            expected_end_date=expected_end,
            phases=phases,
        )
        return self.create_custom_plan(
            caller, patient_code, custom, source_template_code=template.template_code
        )

    def _advance(self, plan: TreatmentPlan, item: PlanItem, now: datetime) -> None:
        phase = item.phase
        if item.status == PlanItemStatus.completed:
            if phase.status == PhaseStatus.pending:
                phase.status = PhaseStatus.in_progress
            following = [
                other
                for other in phase.items
                if other.sequence_number > item.sequence_number
                and other.status != PlanItemStatus.cancelled
            ]
            if following and following[0].status == PlanItemStatus.pending:
                following[0].status = PlanItemStatus.ready_for_booking
        self._settle(plan, phase, now)

    def _settle(self, plan: TreatmentPlan, phase: PlanPhase, now: datetime) -> None:
        if phase.status != PhaseStatus.completed and all(
            other.status in CLOSED_ITEM_STATUSES for other in phase.items
        ):
            phase.status = PhaseStatus.completed
            phase.completed_at = now
            logger.info("Phase %s of plan %s completed", phase.phase_number, plan.plan_code)
            later = [p for p in plan.phases if p.phase_number > phase.phase_number]
            if later:
                pending = [i for i in later[0].items if i.status == PlanItemStatus.pending]
                if pending:
                    pending[0].status = PlanItemStatus.ready_for_booking

        if plan.status == TreatmentPlanStatus.in_progress and all(
            p.status == PhaseStatus.completed for p in plan.phases
        ):
            plan.status = TreatmentPlanStatus.completed
            logger.info("Plan %s completed", plan.plan_code)

    def update_item_status(
        self,
        caller: Caller,
        item_id: int,
        new_status: PlanItemStatus,
        notes: str | None = None,
    ) -> PlanItem:
        item = self.store.get_item(item_id, for_update=True)
        if item is None:
            raise ItemNotFound(item_id)
        current = item.status
        if new_status == current:
            return item
        if new_status == PlanItemStatus.scheduled:
            raise InvalidTransition(
                "Items are scheduled by booking an appointment",
                item_id=item_id,
                current_status=current.value,
                attempted_status=new_status.value,
            )
        if new_status not in ITEM_TRANSITIONS[current]:
            raise InvalidTransition(
                f"Item cannot move from {current.value} to {new_status.value}",
                item_id=item_id,
                current_status=current.value,
                attempted_status=new_status.value,
            )

        plan = item.plan
        now = _now()
        item.status = new_status
        if new_status == PlanItemStatus.completed:
            item.completed_at = now
        if new_status in CLOSED_ITEM_STATUSES:
            self._advance(plan, item, now)
        plan.updated_by = caller.identity
        after_data: dict[str, Any] = {
            "status": new_status,
            "plan_code": plan.plan_code,
            "notes": notes,
        }
        if new_status == PlanItemStatus.cancelled:
            recompute_totals(plan)
            after_data["total_price"] = plan.total_price
            after_data["final_cost"] = plan.final_cost
        log_event(
            self.db,
            actor=caller,
            action="treatment_plan_item.status_changed",
            entity_type="treatment_plan_item",
            entity_id=str(item.id),
            before_data={"status": current},
            after_data=after_data,
        )
        self.db.commit()
        logger.info(
            "Item %s of plan %s moved %s -> %s",
            item.id,
            plan.plan_code,
            current.value,
            new_status.value,
        )
        return item

    def _ensure_open(self, plan: TreatmentPlan) -> None:
        if plan.status in (TreatmentPlanStatus.completed, TreatmentPlanStatus.cancelled):
            raise InvalidTransition(
                f"Plan is {plan.status.value} and can no longer be edited",
                plan_code=plan.plan_code,
                current_status=plan.status.value,
            )

    def _editable_item(self, item_id: int) -> PlanItem:
        """Load an item for update or delete; only draft or rejected plans qualify."""
        item = self.store.get_item(item_id, for_update=True)
        if item is None:
            raise ItemNotFound(item_id)
        plan = item.plan
        self._ensure_open(plan)
        if plan.approval_status in FROZEN_APPROVAL_STATUSES:
            raise InvalidTransition(
                f"Plan approval is {plan.approval_status.value}; items cannot be changed",
                plan_code=plan.plan_code,
                item_id=item_id,
                approval_status=plan.approval_status.value,
            )
        if item.status in LOCKED_ITEM_STATUSES:
            raise InvalidTransition(
                f"Item is {item.status.value} and cannot be changed",
                plan_code=plan.plan_code,
                item_id=item_id,
                current_status=item.status.value,
            )
        return item

    def _check_discount(self, plan: TreatmentPlan) -> None:
        if plan.discount_amount > plan.total_price:
            raise PlanValidationError(
                "Discount cannot exceed the plan total",
                code="discount_exceeds_total",
                discount_amount=plan.discount_amount,
                total_price=plan.total_price,
            )

    def add_items(
        self,
        caller: Caller,
        plan_code: str,
        phase_number: int,
        items: list[PlanItemAdd],
        *,
        auto_submit: bool = False,
    ) -> tuple[TreatmentPlan, list[PlanItem]]:
        """Append items to the end of a phase.

        Allowed on DRAFT and REJECTED plans. An APPROVED plan accepts new
        items only with ``auto_submit``, which sends it back to
        PENDING_APPROVAL so nothing unreviewed becomes bookable.
        """
        if not items:
            raise PlanValidationError(
                "At least one item is required", code="no_items", plan_code=plan_code
            )
        plan = self.store.get_plan(plan_code, for_update=True)
        if plan is None:
            raise PlanNotFound(plan_code)
        self._ensure_open(plan)
        approval = plan.approval_status
        if approval == ApprovalStatus.pending_approval:
            raise InvalidTransition(
                "Plan is waiting for review; items cannot be added until it is decided",
                plan_code=plan_code,
                approval_status=approval.value,
            )
        if approval == ApprovalStatus.approved and not auto_submit:
            raise InvalidTransition(
                "Items added to an approved plan need a new review; set auto_submit",
                plan_code=plan_code,
                approval_status=approval.value,
            )
        phase = next((p for p in plan.phases if p.phase_number == phase_number), None)
        if phase is None:
            raise PlanValidationError(
                f"Plan has no phase {phase_number}",
                code="unknown_phase",
                plan_code=plan_code,
                phase_number=phase_number,
            )
        if phase.status == PhaseStatus.completed:
            raise InvalidTransition(
                f"Phase {phase_number} is completed",
                plan_code=plan_code,
                phase_number=phase_number,
            )

        services = {
            item_in.service_code: self._resolve_service(
                item_in.service_code, phase_number=phase_number
            )
            for item_in in items
        }
        self._check_doctor_covers(
            plan.doctor_employee_code, [item_in.service_code for item_in in items]
        )

        next_sequence = max((i.sequence_number for i in phase.items), default=0) + 1
        added: list[PlanItem] = []
        for offset, item_in in enumerate(items):
            service = services[item_in.service_code]
            item = PlanItem(
                service_code=service.service_code,
                item_name=service.service_name,
                sequence_number=next_sequence + offset,
                quantity=item_in.quantity,
                price=item_in.price if item_in.price is not None else service.price,
                estimated_time_minutes=(
                    item_in.estimated_time_minutes
                    if item_in.estimated_time_minutes is not None
                    else service.default_duration_minutes
                ),
                status=_initial_item_status(self.readiness_policy, phase_number, item_in),
            )
            item.plan = plan
            phase.items.append(item)
            added.append(item)

        try:
            resubmitted = approval == ApprovalStatus.approved
            if resubmitted:
                rows = self.store.update_approval(
                    plan.id,
                    expected=ApprovalStatus.approved,
                    target=ApprovalStatus.pending_approval,
                    values={
                        "approved_by": None,
                        "approved_at": None,
                        "approval_notes": None,
                        "updated_by": caller.identity,
                    },
                )
                if rows != 1:
                    raise ConcurrencyConflict(plan_code=plan_code)
            totals_before = (plan.total_price, plan.final_cost)
            recompute_totals(plan)
            plan.updated_by = caller.identity
            self.db.flush()
            log_event(
                self.db,
                actor=caller,
                action="treatment_plan.items_added",
                entity_type="treatment_plan",
                entity_id=plan_code,
                before_data={
                    "approval_status": approval,
                    "total_price": totals_before[0],
                    "final_cost": totals_before[1],
                },
                after_data={
                    "approval_status": plan.approval_status,
                    "phase_number": phase_number,
                    "item_ids": [item.id for item in added],
                    "total_price": plan.total_price,
                    "final_cost": plan.final_cost,
                },
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        if resubmitted:
            logger.warning(
                "Plan %s sent back for review after %s items were added by %s",
                plan_code,
                len(added),
                caller.identity,
            )
        logger.info(
            "Added %s items to phase %s of plan %s", len(added), phase_number, plan_code
        )
        return plan, added

    def update_item(self, caller: Caller, item_id: int, changes: PlanItemUpdate) -> PlanItem:
        item = self._editable_item(item_id)
        plan = item.plan
        values = changes.model_dump(exclude_none=True)
        before = {field: getattr(item, field) for field in values}
        after = {field: value for field, value in values.items() if before[field] != value}
        if not after:
            raise PlanValidationError(
                "Nothing to change", code="no_changes", item_id=item_id, plan_code=plan.plan_code
            )
        try:
            for field, value in after.items():
                setattr(item, field, value)
            recompute_totals(plan)
            self._check_discount(plan)
            plan.updated_by = caller.identity
            log_event(
                self.db,
                actor=caller,
                action="treatment_plan_item.updated",
                entity_type="treatment_plan_item",
                entity_id=str(item.id),
                before_data={field: before[field] for field in after},
                after_data={
                    **after,
                    "plan_code": plan.plan_code,
                    "total_price": plan.total_price,
                    "final_cost": plan.final_cost,
                },
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info("Item %s of plan %s updated: %s", item.id, plan.plan_code, sorted(after))
        return item

    def delete_item(self, caller: Caller, item_id: int) -> TreatmentPlan:
        item = self._editable_item(item_id)
        plan = item.plan
        phase = item.phase
        if len(phase.items) == 1:
            raise PlanValidationError(
                f"Phase {phase.phase_number} would have no items",
                code="empty_phase",
                plan_code=plan.plan_code,
                phase_number=phase.phase_number,
            )
        was_ready = item.status == PlanItemStatus.ready_for_booking
        removed = {
            "service_code": item.service_code,
            "sequence_number": item.sequence_number,
            "price": item.price,
            "quantity": item.quantity,
        }
        try:
            phase.items.remove(item)
            if was_ready:
                # readiness passes to the next waiting item of the phase
                waiting = [i for i in phase.items if i.status == PlanItemStatus.pending]
                if waiting and not any(
                    i.status == PlanItemStatus.ready_for_booking for i in phase.items
                ):
                    waiting[0].status = PlanItemStatus.ready_for_booking
            self._settle(plan, phase, _now())
            recompute_totals(plan)
            self._check_discount(plan)
            plan.updated_by = caller.identity
            log_event(
                self.db,
                actor=caller,
                action="treatment_plan_item.deleted",
                entity_type="treatment_plan_item",
                entity_id=str(item_id),
                before_data=removed,
                after_data={
                    "plan_code": plan.plan_code,
                    "total_price": plan.total_price,
                    "final_cost": plan.final_cost,
                },
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info("Item %s removed from plan %s by %s", item_id, plan.plan_code, caller.identity)
        return plan

    def cancel_plan(self, caller: Caller, plan_code: str, reason: str | None = None) -> TreatmentPlan:
        plan = self.store.get_plan(plan_code, for_update=True)
        if plan is None:
            raise PlanNotFound(plan_code)
        if plan.status in (TreatmentPlanStatus.completed, TreatmentPlanStatus.cancelled):
            raise InvalidTransition(
                f"Plan is already {plan.status.value}",
                plan_code=plan_code,
                current_status=plan.status.value,
                attempted_status=TreatmentPlanStatus.cancelled.value,
            )
        scheduled = [item.id for item in plan.items if item.status == PlanItemStatus.scheduled]
        if scheduled:
            raise InvalidTransition(
                "Plan has scheduled items; cancel their appointments first",
                plan_code=plan_code,
                item_ids=scheduled,
            )
        before = plan.status
        for item in plan.items:
            if item.status not in CLOSED_ITEM_STATUSES:
                item.status = PlanItemStatus.cancelled
        recompute_totals(plan)
        plan.status = TreatmentPlanStatus.cancelled
        plan.cancel_reason = (reason or "").strip() or None
        plan.updated_by = caller.identity
        log_event(
            self.db,
            actor=caller,
            action="treatment_plan.cancelled",
            entity_type="treatment_plan",
            entity_id=plan_code,
            before_data={"status": before},
            after_data={
                "status": plan.status,
                "reason": plan.cancel_reason,
                "total_price": plan.total_price,
                "final_cost": plan.final_cost,
            },
        )
        self.db.commit()
        logger.info("Plan %s cancelled by %s", plan_code, caller.identity)
        return plan

    def delete_plan(self, caller: Caller, plan_code: str) -> None:
        plan = self.store.get_plan(plan_code, for_update=True)
        if plan is None:
            raise PlanNotFound(plan_code)
        plan.deleted_at = _now()
        plan.deleted_by = caller.identity
        log_event(
            self.db,
            actor=caller,
            action="treatment_plan.deleted",
            entity_type="treatment_plan",
            entity_id=plan_code,
            before_data={"status": plan.status, "approval_status": plan.approval_status},
        )
        self.db.commit()
        logger.warning("Plan %s deleted by %s", plan_code, caller.identity)
