from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core.settings import ItemReadinessPolicy, Settings
from app.models import (
    Base,
    DentalService,
    Employee,
    Patient,
    Specialization,
    TemplatePhase,
    TemplatePhaseService,
    TreatmentPlanTemplate,
)
from app.schemas.appointment import AppointmentDraft
from app.schemas.caller import Caller, CallerRole
from app.schemas.treatment_plan import CustomPlanCreate
from app.services import capabilities as caps
from app.services.appointments import AppointmentRef
from app.services.treatment_plans import TreatmentPlanService


class FakeAppointmentGateway:
    def __init__(self, fail_with: Exception | None = None):
        self.calls: list[dict] = []
        self.fail_with = fail_with

    def create_appointment(self, *, patient_code, service_codes, plan_item_ids, draft, timeout):
        self.calls.append(
            {
                "patient_code": patient_code,
                "service_codes": list(service_codes),
                "plan_item_ids": list(plan_item_ids),
                "timeout": timeout,
            }
        )
        if self.fail_with is not None:
            raise self.fail_with
        return AppointmentRef(
            appointment_code=f"APT-TEST-{len(self.calls):03d}",
            start_time=draft.start_time,
            status="SCHEDULED",
        )


class RecordingNotifier:
    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def publish(self, event, payload):
        self.events.append((event, payload))


def seed_catalog(session) -> None:
    endo = Specialization(code="ENDO", name="Endodontics")
    ortho = Specialization(code="ORTHO", name="Orthodontics")
    session.add_all([endo, ortho])
    session.add_all(
        [
            DentalService(
                service_code="ENDO_TREAT_POST",
                service_name="Root canal, posterior",
                specialization=endo,
                price=2_000_000,
                default_duration_minutes=90,
            ),
            DentalService(
                service_code="ORTHO_BRACES_ON",
                service_name="Bracket bonding",
                specialization=ortho,
                price=5_000_000,
                default_duration_minutes=120,
            ),
            DentalService(
                service_code="ORTHO_ADJUST",
                service_name="Brace adjustment",
                specialization=ortho,
                price=500_000,
                default_duration_minutes=30,
            ),
            DentalService(
                service_code="EXAM_GENERAL",
                service_name="General examination",
                price=100_000,
                default_duration_minutes=15,
            ),
            DentalService(
                service_code="SCALING",
                service_name="Scaling and polishing",
                price=300_000,
                default_duration_minutes=45,
            ),
            DentalService(
                service_code="RETIRED_SVC",
                service_name="Retired service",
                price=1,
                is_active=False,
            ),
        ]
    )
    session.add_all(
        [
            Employee(
                employee_code="EMP001",
                first_name="Lan",
                last_name="Pham",
                specializations=[ortho],
            ),
            Employee(
                employee_code="EMP002",
                first_name="Minh",
                last_name="Le",
                specializations=[endo, ortho],
            ),
            Employee(employee_code="EMP003", first_name="Hoa", last_name="Vo", is_active=False),
        ]
    )
    session.add_all(
        [
            Patient(patient_code="BN-1001", first_name="An", last_name="Nguyen"),
            Patient(patient_code="BN-1002", first_name="Binh", last_name="Tran"),
        ]
    )
    session.add(
        TreatmentPlanTemplate(
            template_code="TPL_ORTHO_BASIC",
            template_name="Basic braces course",
            estimated_duration_days=180,
            phases=[
                TemplatePhase(
                    phase_number=1,
                    phase_name="Preparation",
                    estimated_duration_days=7,
                    services=[
                        TemplatePhaseService(service_code="EXAM_GENERAL", sequence_number=1),
                        TemplatePhaseService(
                            service_code="ORTHO_BRACES_ON",
                            sequence_number=2,
                            estimated_time_minutes=150,
                        ),
                    ],
                ),
                TemplatePhase(
                    phase_number=2,
                    phase_name="Adjustments",
                    estimated_duration_days=170,
                    services=[
                        TemplatePhaseService(
                            service_code="ORTHO_ADJUST", sequence_number=1, quantity=3
                        ),
                    ],
                ),
            ],
        )
    )
    session.add(
        TreatmentPlanTemplate(
            template_code="TPL_RETIRED",
            template_name="Retired course",
            is_active=False,
            phases=[
                TemplatePhase(
                    phase_number=1,
                    phase_name="Only",
                    services=[TemplatePhaseService(service_code="SCALING", sequence_number=1)],
                )
            ],
        )
    )
    session.commit()


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'plans.db'}", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    seed_catalog(session)
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def test_settings():
    return Settings(
        secret_key="test-secret-key-that-is-long-enough-1234",
        item_readiness_policy=ItemReadinessPolicy.first_phase,
        conflict_max_retries=3,
        booking_persist_retries=2,
        default_page_size=10,
        max_page_size=25,
    )


@pytest.fixture
def gateway():
    return FakeAppointmentGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(db, gateway, notifier, test_settings):
    return TreatmentPlanService(db, gateway=gateway, notifier=notifier, settings=test_settings)


@pytest.fixture
def admin():
    return Caller(subject="admin-1", role=CallerRole.admin)


@pytest.fixture
def doctor():
    return Caller(
        subject="user-emp002",
        role=CallerRole.employee,
        employee_code="EMP002",
        permissions=frozenset(
            {caps.VIEW_OWN, caps.CREATE, caps.UPDATE, caps.BOOK_FROM_PLAN}
        ),
    )


@pytest.fixture
def other_doctor():
    return Caller(
        subject="user-emp001",
        role=CallerRole.employee,
        employee_code="EMP001",
        permissions=frozenset(
            {caps.VIEW_OWN, caps.VIEW_ALL, caps.CREATE, caps.UPDATE, caps.BOOK_FROM_PLAN}
        ),
    )


@pytest.fixture
def manager():
    return Caller(
        subject="user-mgr",
        role=CallerRole.employee,
        employee_code="MGR01",
        permissions=frozenset({caps.VIEW_ALL, caps.APPROVE}),
    )


@pytest.fixture
def patient():
    return Caller(
        subject="user-bn1001",
        role=CallerRole.patient,
        patient_code="BN-1001",
        permissions=frozenset({caps.VIEW_OWN}),
    )


@pytest.fixture
def draft():
    return AppointmentDraft(
        employee_code="EMP002",
        start_time=datetime(2026, 11, 2, 9, 0, tzinfo=timezone.utc),
        room_code="R-01",
    )


def build_payload(
    phases: list[list[str]] | None = None,
    *,
    doctor_code: str = "EMP002",
    discount: int = 0,
    plan_name: str = "Root canal and braces",
) -> CustomPlanCreate:
    phases = phases or [["ENDO_TREAT_POST", "EXAM_GENERAL"], ["ORTHO_ADJUST"]]
    return CustomPlanCreate(
        plan_name=plan_name,
        doctor_employee_code=doctor_code,
        discount_amount=discount,
        phases=[
            {
                "phase_number": number,
                "phase_name": f"Phase {number}",
                "items": [
                    {"service_code": code, "sequence_number": seq}
                    for seq, code in enumerate(codes, start=1)
                ],
            }
            for number, codes in enumerate(phases, start=1)
        ],
    )


@pytest.fixture
def payload_factory():
    return build_payload


@pytest.fixture
def approved_plan(service, doctor, manager):
    plan = service.create_custom_plan(doctor, "BN-1001", build_payload())
    service.submit_for_review(doctor, plan.plan_code)
    return service.approve(manager, plan.plan_code, notes="Looks good")


@pytest.fixture
def gateway_factory():
    return FakeAppointmentGateway


@pytest.fixture
def api_client(service, test_settings, monkeypatch):
    from fastapi.testclient import TestClient

    from app.core.settings import settings as app_settings
    from app.deps import get_treatment_plan_service
    from app.main import app

    monkeypatch.setattr(app_settings, "secret_key", test_settings.secret_key)
    app.dependency_overrides[get_treatment_plan_service] = lambda: service
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def auth_headers_for(test_settings):
    from app.core.security import caller_claims, create_access_token

    def build(caller: Caller) -> dict[str, str]:
        token = create_access_token(
            subject=caller.subject,
            secret=test_settings.secret_key,
            alg=test_settings.jwt_alg,
            expires_minutes=15,
            extra=caller_claims(caller),
        )
        return {"Authorization": f"Bearer {token}"}

    return build
