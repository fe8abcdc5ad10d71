import re
from datetime import date, timedelta

import pytest
from sqlalchemy import func, select

from app.core.settings import ItemReadinessPolicy
from app.models import (
    AuditLog,
    PlanItem,
    PlanPhase,
    TemplatePhase,
    TemplatePhaseService,
    TreatmentPlan,
    TreatmentPlanTemplate,
)
from app.schemas.treatment_plan import CustomPlanCreate, TemplatePlanCreate
from app.services import lifecycle
from app.services.errors import (
    AccessDenied,
    PlanValidationError,
    SpecializationMismatch,
    TemplateNotFound,
)
from app.services.lifecycle import PlanLifecycleEngine


def count_rows(db, model) -> int:
    return db.scalar(select(func.count(model.id)))


def assert_nothing_persisted(db) -> None:
    assert count_rows(db, TreatmentPlan) == 0
    assert count_rows(db, PlanPhase) == 0
    assert count_rows(db, PlanItem) == 0


def test_create_custom_plan_persists_tree(service, doctor, payload_factory):
    plan = service.create_custom_plan(doctor, "BN-1001", payload_factory())

    assert re.fullmatch(r"PLAN-\d{8}-[0-9A-F]{6}", plan.plan_code)
    assert plan.status.value == "IN_PROGRESS"
    assert plan.approval_status.value == "DRAFT"
    assert plan.created_by == "EMP002"
    assert plan.patient_name == "An Nguyen"
    assert plan.doctor_name == "Minh Le"
    assert [phase.phase_number for phase in plan.phases] == [1, 2]
    first, second = plan.phases
    assert [item.service_code for item in first.items] == ["ENDO_TREAT_POST", "EXAM_GENERAL"]
    assert [item.status.value for item in first.items] == ["READY_FOR_BOOKING"] * 2
    assert [item.status.value for item in second.items] == ["PENDING"]
    assert first.items[0].item_name == "Root canal, posterior"
    assert first.items[0].price == 2_000_000
    assert first.items[0].estimated_time_minutes == 90
    assert plan.total_price == 2_600_000
    assert plan.final_cost == 2_600_000
    assert plan.approval_metadata is None


def test_create_custom_plan_writes_audit_entry(service, db, doctor, payload_factory):
    plan = service.create_custom_plan(doctor, "BN-1001", payload_factory())

    entry = db.scalar(select(AuditLog).where(AuditLog.entity_id == plan.plan_code))
    assert entry is not None
    assert entry.action == "treatment_plan.created"
    assert entry.actor_code == "EMP002"
    assert entry.after_json["items"] == 3


def test_specialization_mismatch_persists_nothing(service, db, other_doctor, payload_factory):
    payload = payload_factory([["ENDO_TREAT_POST"]], doctor_code="EMP001")

    with pytest.raises(SpecializationMismatch) as excinfo:
        service.create_custom_plan(other_doctor, "BN-1001", payload)

    assert excinfo.value.service_code == "ENDO_TREAT_POST"
    assert excinfo.value.employee_code == "EMP001"
    assert excinfo.value.as_dict()["code"] == "specialization_mismatch"
    assert_nothing_persisted(db)


def test_specialization_checked_for_every_item(service, other_doctor):
    payload = CustomPlanCreate(
        plan_name="Mixed",
        doctor_employee_code="EMP001",
        phases=[
            {
                "phase_number": 1,
                "phase_name": "Start",
                "items": [
                    {"service_code": "ORTHO_ADJUST", "sequence_number": 2},
                    {"service_code": "ENDO_TREAT_POST", "sequence_number": 1},
                ],
            }
        ],
    )

    with pytest.raises(SpecializationMismatch) as excinfo:
        service.create_custom_plan(other_doctor, "BN-1001", payload)
    assert excinfo.value.service_code == "ENDO_TREAT_POST"


def test_general_services_need_no_specialization(service, other_doctor, payload_factory):
    payload = payload_factory([["EXAM_GENERAL", "SCALING"]], doctor_code="EMP001")

    plan = service.create_custom_plan(other_doctor, "BN-1002", payload)

    assert len(plan.phases[0].items) == 2


@pytest.mark.parametrize(
    "phases, code",
    [
        ([], "no_phases"),
        (
            [
                {"phase_number": 1, "phase_name": "A", "items": [{"service_code": "SCALING", "sequence_number": 1}]},
                {"phase_number": 1, "phase_name": "B", "items": [{"service_code": "SCALING", "sequence_number": 1}]},
            ],
            "duplicate_phase_number",
        ),
        (
            [
                {"phase_number": 1, "phase_name": "A", "items": [{"service_code": "SCALING", "sequence_number": 1}]},
                {"phase_number": 3, "phase_name": "C", "items": [{"service_code": "SCALING", "sequence_number": 1}]},
            ],
            "non_contiguous_phases",
        ),
        ([{"phase_number": 1, "phase_name": "A", "items": []}], "empty_phase"),
        (
            [
                {
                    "phase_number": 1,
                    "phase_name": "A",
                    "items": [
                        {"service_code": "SCALING", "sequence_number": 1},
                        {"service_code": "EXAM_GENERAL", "sequence_number": 1},
                    ],
                }
            ],
            "duplicate_sequence_number",
        ),
        (
            [{"phase_number": 1, "phase_name": "A", "items": [{"service_code": "NOPE", "sequence_number": 1}]}],
            "unknown_service",
        ),
        (
            [{"phase_number": 1, "phase_name": "A", "items": [{"service_code": "RETIRED_SVC", "sequence_number": 1}]}],
            "unknown_service",
        ),
    ],
)
def test_structural_validation(service, db, doctor, phases, code):
    payload = CustomPlanCreate(plan_name="Broken", doctor_employee_code="EMP002", phases=phases)

    with pytest.raises(PlanValidationError) as excinfo:
        service.create_custom_plan(doctor, "BN-1001", payload)

    assert excinfo.value.code == code
    assert_nothing_persisted(db)


def test_unknown_patient_and_inactive_doctor(service, doctor, payload_factory):
    with pytest.raises(PlanValidationError) as excinfo:
        service.create_custom_plan(doctor, "BN-9999", payload_factory())
    assert excinfo.value.code == "unknown_patient"

    with pytest.raises(PlanValidationError) as excinfo:
        service.create_custom_plan(
            doctor, "BN-1001", payload_factory([["SCALING"]], doctor_code="EMP003")
        )
    assert excinfo.value.code == "unknown_doctor"


def test_discount_cannot_exceed_total(service, db, doctor, payload_factory):
    with pytest.raises(PlanValidationError) as excinfo:
        service.create_custom_plan(
            doctor, "BN-1001", payload_factory([["SCALING"]], discount=300_001)
        )
    assert excinfo.value.code == "discount_exceeds_total"
    assert_nothing_persisted(db)

    plan = service.create_custom_plan(
        doctor, "BN-1001", payload_factory([["SCALING"]], discount=100_000)
    )
    assert plan.final_cost == 200_000


def test_zero_price_items_are_accepted(service, doctor):
    payload = CustomPlanCreate(
        plan_name="Goodwill",
        doctor_employee_code="EMP002",
        phases=[
            {
                "phase_number": 1,
                "phase_name": "Only",
                "items": [{"service_code": "SCALING", "sequence_number": 1, "price": 0, "quantity": 2}],
            }
        ],
    )

    plan = service.create_custom_plan(doctor, "BN-1001", payload)

    item = plan.phases[0].items[0]
    assert item.price == 0
    assert item.quantity == 2
    assert plan.total_price == 0


def test_failed_write_leaves_no_partial_tree(service, db, doctor, payload_factory, monkeypatch):
    def broken_audit(*args, **kwargs):
        raise RuntimeError("audit store unavailable")

    monkeypatch.setattr(lifecycle, "log_event", broken_audit)

    with pytest.raises(RuntimeError):
        service.create_custom_plan(doctor, "BN-1001", payload_factory())

    assert_nothing_persisted(db)


def test_patient_cannot_create_plans(service, patient, payload_factory):
    with pytest.raises(AccessDenied):
        service.create_custom_plan(patient, "BN-1001", payload_factory())


@pytest.mark.parametrize(
    "policy, expected",
    [
        (ItemReadinessPolicy.first_phase, ["READY_FOR_BOOKING", "PENDING"]),
        (ItemReadinessPolicy.all_pending, ["PENDING", "PENDING"]),
        (ItemReadinessPolicy.caller_flag, ["PENDING", "READY_FOR_BOOKING"]),
    ],
)
def test_initial_item_status_follows_readiness_policy(db, doctor, policy, expected):
    engine = PlanLifecycleEngine(db, readiness_policy=policy)
    payload = CustomPlanCreate(
        plan_name="Policy",
        doctor_employee_code="EMP002",
        phases=[
            {"phase_number": 1, "phase_name": "One", "items": [{"service_code": "SCALING", "sequence_number": 1}]},
            {
                "phase_number": 2,
                "phase_name": "Two",
                "items": [{"service_code": "EXAM_GENERAL", "sequence_number": 1, "ready_for_booking": True}],
            },
        ],
    )

    plan = engine.create_custom_plan(doctor, "BN-1001", payload)

    assert [item.status.value for item in plan.items] == expected


def test_create_from_template_copies_structure(service, doctor):
    plan = service.create_from_template(
        doctor,
        "BN-1001",
        TemplatePlanCreate(source_template_code="TPL_ORTHO_BASIC", doctor_employee_code="EMP002"),
    )

    assert plan.plan_name == "Basic braces course"
    assert plan.source_template_code == "TPL_ORTHO_BASIC"
    assert plan.start_date == date.today()
    assert plan.expected_end_date == date.today() + timedelta(days=180)
    assert [phase.phase_name for phase in plan.phases] == ["Preparation", "Adjustments"]
    first, second = plan.phases
    assert [item.service_code for item in first.items] == ["EXAM_GENERAL", "ORTHO_BRACES_ON"]
    assert [item.estimated_time_minutes for item in first.items] == [15, 150]
    assert second.items[0].quantity == 3
    assert plan.total_price == 100_000 + 5_000_000 + 3 * 500_000


def test_template_plans_get_fresh_items(service, doctor):
    request = TemplatePlanCreate(
        source_template_code="TPL_ORTHO_BASIC",
        doctor_employee_code="EMP002",
        plan_name_override="Braces for Binh",
    )

    first = service.create_from_template(doctor, "BN-1001", request)
    second = service.create_from_template(doctor, "BN-1002", request)

    assert second.plan_name == "Braces for Binh"
    assert first.plan_code != second.plan_code
    first_ids = {item.item_id for phase in first.phases for item in phase.items}
    second_ids = {item.item_id for phase in second.phases for item in phase.items}
    assert first_ids.isdisjoint(second_ids)


def test_template_instantiation_enforces_specialization(service, db, other_doctor):
    db.add(
        TreatmentPlanTemplate(
            template_code="TPL_ENDO",
            template_name="Root canal",
            phases=[
                TemplatePhase(
                    phase_number=1,
                    phase_name="Treatment",
                    services=[TemplatePhaseService(service_code="ENDO_TREAT_POST", sequence_number=1)],
                )
            ],
        )
    )
    db.commit()

    with pytest.raises(SpecializationMismatch):
        service.create_from_template(
            other_doctor,
            "BN-1001",
            TemplatePlanCreate(source_template_code="TPL_ENDO", doctor_employee_code="EMP001"),
        )
    assert_nothing_persisted(db)


def test_template_lookup_failures(service, doctor):
    with pytest.raises(TemplateNotFound):
        service.create_from_template(
            doctor,
            "BN-1001",
            TemplatePlanCreate(source_template_code="TPL_MISSING", doctor_employee_code="EMP002"),
        )

    with pytest.raises(PlanValidationError) as excinfo:
        service.create_from_template(
            doctor,
            "BN-1001",
            TemplatePlanCreate(source_template_code="TPL_RETIRED", doctor_employee_code="EMP002"),
        )
    assert excinfo.value.code == "inactive_template"
