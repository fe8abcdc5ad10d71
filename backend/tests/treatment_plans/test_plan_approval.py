import logging

import pytest
from sqlalchemy import func, select, update

from app.models import AuditLog, TreatmentPlan
from app.models.treatment_plan import ApprovalStatus
from app.services.approval import ApprovalGate
from app.services.errors import (
    AccessDenied,
    ConcurrencyConflict,
    InvalidTransition,
    MissingReason,
    PlanNotFound,
    PlanValidationError,
)
from app.services.treatment_plans import TreatmentPlanService


@pytest.fixture
def submitted_plan(service, doctor, payload_factory):
    plan = service.create_custom_plan(doctor, "BN-1001", payload_factory())
    return service.submit_for_review(doctor, plan.plan_code, notes="Ready for review")


def test_submit_moves_draft_to_pending(submitted_plan, notifier):
    assert submitted_plan.approval_status.value == "PENDING_APPROVAL"
    assert submitted_plan.submit_notes == "Ready for review"
    assert notifier.events[-1][0] == "treatment_plan.submitted"


def test_approve_records_metadata(service, submitted_plan, manager, notifier):
    plan = service.approve(manager, submitted_plan.plan_code, notes="Looks good")

    assert plan.approval_status.value == "APPROVED"
    assert plan.approval_metadata is not None
    assert plan.approval_metadata.approved_by == "MGR01"
    assert plan.approval_metadata.approved_at is not None
    assert plan.approval_metadata.notes == "Looks good"
    assert plan.status.value == "IN_PROGRESS"
    event, payload = notifier.events[-1]
    assert event == "treatment_plan.approved"
    assert payload["approved_by"] == "MGR01"


def test_approve_requires_pending_state(service, doctor, manager, payload_factory):
    plan = service.create_custom_plan(doctor, "BN-1001", payload_factory())

    with pytest.raises(InvalidTransition) as excinfo:
        service.approve(manager, plan.plan_code)

    assert excinfo.value.context["current_status"] == "DRAFT"
    assert excinfo.value.context["attempted_status"] == "APPROVED"


def test_reject_requires_reason(service, submitted_plan, manager, admin):
    for reason in (None, "", "   "):
        with pytest.raises(MissingReason):
            service.reject(manager, submitted_plan.plan_code, reason)

    detail = service.get_plan_detail(admin, submitted_plan.plan_code)
    assert detail.approval_status.value == "PENDING_APPROVAL"


def test_second_rejection_is_invalid_transition(service, db, submitted_plan, manager):
    first = service.reject(manager, submitted_plan.plan_code, "Missing X-ray")
    assert first.approval_status.value == "REJECTED"
    assert first.rejection_reason == "Missing X-ray"
    assert first.reviewed_by == "MGR01"

    with pytest.raises(InvalidTransition):
        service.reject(manager, submitted_plan.plan_code, "Missing X-ray")

    rejections = db.scalar(
        select(func.count(AuditLog.id)).where(
            AuditLog.entity_id == submitted_plan.plan_code,
            AuditLog.action == "treatment_plan.rejected",
        )
    )
    assert rejections == 1


def test_rejected_plan_returns_to_draft_and_resubmits(service, submitted_plan, doctor, manager):
    service.reject(manager, submitted_plan.plan_code, "Add a scaling visit")

    plan = service.resubmit(doctor, submitted_plan.plan_code)
    assert plan.approval_status.value == "DRAFT"

    plan = service.submit_for_review(doctor, submitted_plan.plan_code)
    assert plan.approval_status.value == "PENDING_APPROVAL"

    plan = service.approve(manager, submitted_plan.plan_code)
    assert plan.approval_status.value == "APPROVED"
    assert plan.rejection_reason is None


def test_resubmit_only_from_rejected(service, submitted_plan, doctor):
    with pytest.raises(InvalidTransition):
        service.resubmit(doctor, submitted_plan.plan_code)


def test_submit_requires_items(db, doctor):
    db.add(
        TreatmentPlan(
            plan_code="PLAN-20260101-EMPTY0",
            plan_name="Empty",
            patient_code="BN-1001",
            doctor_employee_code="EMP002",
            created_by="EMP002",
        )
    )
    db.commit()

    with pytest.raises(PlanValidationError) as excinfo:
        ApprovalGate(db).submit("PLAN-20260101-EMPTY0", doctor)
    assert excinfo.value.code == "empty_plan"


def test_approval_needs_capability(service, submitted_plan, doctor, patient):
    with pytest.raises(AccessDenied):
        service.approve(doctor, submitted_plan.plan_code)
    with pytest.raises(AccessDenied):
        service.reject(patient, submitted_plan.plan_code, "no")


def test_unknown_plan(service, manager):
    with pytest.raises(PlanNotFound):
        service.approve(manager, "PLAN-19990101-000000")


def test_admin_override_returns_approved_plan_to_draft(service, db, approved_plan, admin, caplog):
    with caplog.at_level(logging.WARNING, logger="clinic_plans.approval"):
        plan = service.override_approval(admin, approved_plan.plan_code, reason="Wrong doctor")

    assert plan.approval_status.value == "DRAFT"
    assert plan.approval_metadata is None
    assert "overridden" in caplog.text
    entry = db.scalar(
        select(AuditLog).where(AuditLog.action == "treatment_plan.approval_overridden")
    )
    assert entry is not None
    assert entry.after_json["reason"] == "Wrong doctor"


def test_override_is_admin_only(service, approved_plan, manager):
    with pytest.raises(AccessDenied):
        service.override_approval(manager, approved_plan.plan_code)


def test_lost_race_is_retried_then_surfaced(db, submitted_plan, manager, monkeypatch):
    gate = ApprovalGate(db, max_retries=3)
    calls = []

    def always_stale(plan_id, **kwargs):
        calls.append(plan_id)
        return 0

    monkeypatch.setattr(gate.store, "update_approval", always_stale)

    with pytest.raises(ConcurrencyConflict):
        gate.approve(submitted_plan.plan_code, manager)
    assert len(calls) == 3


def test_race_loser_sees_winner_state(db, session_factory, submitted_plan, manager, monkeypatch):
    gate = ApprovalGate(db, max_retries=3)
    original = gate.store.update_approval

    def rival_rejects_first(plan_id, **kwargs):
        rival = session_factory()
        try:
            rival.execute(
                update(TreatmentPlan)
                .where(TreatmentPlan.id == plan_id)
                .values(approval_status=ApprovalStatus.rejected, rejection_reason="Rival")
            )
            rival.commit()
        finally:
            rival.close()
        return original(plan_id, **kwargs)

    monkeypatch.setattr(gate.store, "update_approval", rival_rejects_first)

    with pytest.raises(InvalidTransition) as excinfo:
        gate.approve(submitted_plan.plan_code, manager)
    assert excinfo.value.context["current_status"] == "REJECTED"


class BrokenNotifier:
    def publish(self, event, payload):
        raise ConnectionError("broker unreachable")


def test_notification_failure_does_not_fail_approval(
    db, gateway, test_settings, submitted_plan, manager, caplog
):
    quiet_service = TreatmentPlanService(
        db, gateway=gateway, notifier=BrokenNotifier(), settings=test_settings
    )

    with caplog.at_level(logging.ERROR, logger="clinic_plans.service"):
        plan = quiet_service.approve(manager, submitted_plan.plan_code)

    assert plan.approval_status.value == "APPROVED"
    assert "Notification treatment_plan.approved failed" in caplog.text
