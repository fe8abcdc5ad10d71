from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.orm import Session

from app.core.settings import settings
from app.models.treatment_plan import ApprovalStatus, TreatmentPlan
from app.schemas.caller import Caller
from app.services.audit import log_event
from app.services.errors import (
    ConcurrencyConflict,
    InvalidTransition,
    MissingReason,
    PlanNotFound,
    PlanValidationError,
)
from app.services.plan_store import PlanStore

logger = logging.getLogger("clinic_plans.approval")


def _clean(text: str | None) -> str | None:
    if text is None:
        return None
    text = text.strip()
    return text or None


class ApprovalGate:
    """Approval axis of a plan, independent of its execution status.

    DRAFT -> PENDING_APPROVAL -> APPROVED | REJECTED, and REJECTED -> DRAFT.
    Each move is a conditional update on the prior status; a lost race is
    re-read and re-checked up to ``conflict_max_retries`` times.
    """

    def __init__(
        self,
        db: Session,
        *,
        store: PlanStore | None = None,
        max_retries: int | None = None,
    ) -> None:
        self.db = db
        self.store = store or PlanStore(db)
        self.max_retries = max_retries or settings.conflict_max_retries

    def submit(self, plan_code: str, submitter: Caller, notes: str | None = None) -> TreatmentPlan:
        def _check(plan: TreatmentPlan) -> None:
            if not plan.items:
                raise PlanValidationError(
                    "A plan without items cannot be submitted",
                    code="empty_plan",
                    plan_code=plan.plan_code,
                )

        return self._transition(
            plan_code,
            submitter,
            expected=ApprovalStatus.draft,
            target=ApprovalStatus.pending_approval,
            action="treatment_plan.submitted",
            check=_check,
            values=lambda now: {"submit_notes": _clean(notes)},
        )

    def approve(self, plan_code: str, approver: Caller, notes: str | None = None) -> TreatmentPlan:
        return self._transition(
            plan_code,
            approver,
            expected=ApprovalStatus.pending_approval,
            target=ApprovalStatus.approved,
            action="treatment_plan.approved",
            values=lambda now: {
                "approved_by": approver.identity,
                "approved_at": now,
                "approval_notes": _clean(notes),
                "reviewed_by": approver.identity,
                "reviewed_at": now,
                "rejection_reason": None,
            },
        )

    def reject(self, plan_code: str, approver: Caller, reason: str | None) -> TreatmentPlan:
        cleaned = _clean(reason)
        if cleaned is None:
            raise MissingReason("A rejection reason is required", plan_code=plan_code)
        return self._transition(
            plan_code,
            approver,
            expected=ApprovalStatus.pending_approval,
            target=ApprovalStatus.rejected,
            action="treatment_plan.rejected",
            values=lambda now: {
                "rejection_reason": cleaned,
                "reviewed_by": approver.identity,
                "reviewed_at": now,
            },
        )

    def resubmit(self, plan_code: str, caller: Caller) -> TreatmentPlan:
        return self._transition(
            plan_code,
            caller,
            expected=ApprovalStatus.rejected,
            target=ApprovalStatus.draft,
            action="treatment_plan.returned_to_draft",
            values=lambda now: {},
        )

    def override(self, plan_code: str, admin: Caller, reason: str | None = None) -> TreatmentPlan:
        plan = self._transition(
            plan_code,
            admin,
            expected=ApprovalStatus.approved,
            target=ApprovalStatus.draft,
            action="treatment_plan.approval_overridden",
            values=lambda now: {
                "approved_by": None,
                "approved_at": None,
                "approval_notes": None,
            },
            extra={"reason": _clean(reason)},
        )
        logger.warning(
            "Approval of plan %s overridden by %s (reason: %s)",
            plan_code,
            admin.identity,
            _clean(reason) or "-",
        )
        return plan

    def _transition(
        self,
        plan_code: str,
        actor: Caller,
        *,
        expected: ApprovalStatus,
        target: ApprovalStatus,
        action: str,
        values: Callable[[datetime], dict[str, Any]],
        check: Callable[[TreatmentPlan], None] | None = None,
        extra: dict[str, Any] | None = None,
    ) -> TreatmentPlan:
        for attempt in range(1, self.max_retries + 1):
            try:
                return self._apply(
                    plan_code,
                    actor,
                    expected=expected,
                    target=target,
                    action=action,
                    values=values,
                    check=check,
                    extra=extra,
                )
            except ConcurrencyConflict:
                self.db.rollback()
                logger.warning(
                    "Approval race on plan %s (%s -> %s), attempt %s/%s",
                    plan_code,
                    expected.value,
                    target.value,
                    attempt,
                    self.max_retries,
                )
        raise ConcurrencyConflict(plan_code=plan_code, attempted_status=target.value)

    def _apply(
        self,
        plan_code: str,
        actor: Caller,
        *,
        expected: ApprovalStatus,
        target: ApprovalStatus,
        action: str,
        values: Callable[[datetime], dict[str, Any]],
        check: Callable[[TreatmentPlan], None] | None,
        extra: dict[str, Any] | None,
    ) -> TreatmentPlan:
        plan = self.store.get_plan(plan_code, for_update=True)
        if plan is None:
            raise PlanNotFound(plan_code)
        current = plan.approval_status
        if current != expected:
            raise InvalidTransition(
                f"Plan approval is {current.value}, expected {expected.value}",
                plan_code=plan_code,
                current_status=current.value,
                attempted_status=target.value,
            )
        if check is not None:
            check(plan)
        now = datetime.now(timezone.utc)
        changes = values(now)
        rows = self.store.update_approval(
            plan.id,
            expected=expected,
            target=target,
            values={**changes, "updated_by": actor.identity},
        )
        if rows != 1:
            raise ConcurrencyConflict(plan_code=plan_code)
        log_event(
            self.db,
            actor=actor,
            action=action,
            entity_type="treatment_plan",
            entity_id=plan_code,
            before_data={"approval_status": current},
            after_data={"approval_status": target, **changes, **(extra or {})},
        )
        self.db.commit()
        self.db.refresh(plan)
        logger.info(
            "Plan %s approval %s -> %s by %s",
            plan_code,
            current.value,
            target.value,
            actor.identity,
        )
        return plan
