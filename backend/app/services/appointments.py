from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Protocol

import httpx
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.core.settings import Settings
from app.models.appointment import Appointment, AppointmentStatus
from app.schemas.appointment import AppointmentDraft, AppointmentRefOut
from app.services.errors import DependencyFailure

logger = logging.getLogger("clinic_plans.appointments")


@dataclass(frozen=True)
class AppointmentRef:
    appointment_code: str
    start_time: datetime | None = None
    status: str | None = None


class AppointmentGateway(Protocol):
    def create_appointment(
        self,
        *,
        patient_code: str,
        service_codes: list[str],
        plan_item_ids: list[int],
        draft: AppointmentDraft,
        timeout: float,
    ) -> AppointmentRef: ...


def generate_appointment_code(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"APT-{now:%Y%m%d}-{secrets.token_hex(4).upper()}"


class LocalAppointmentGateway:
    """Writes the appointment into the clinic's own ``appointments`` table.

    With a ``session_factory`` the row is committed in its own session, an
    independent record that survives a rollback of the caller's plan
    transaction. With ``session`` the row is flushed into the caller's open
    transaction and commits or rolls back together with the plan links;
    SQLite needs this because a second writer blocks on the booking's
    uncommitted claim.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        *,
        session: Session | None = None,
    ) -> None:
        if session_factory is None and session is None:
            raise ValueError("LocalAppointmentGateway needs a session or a session factory")
        self.session_factory = session_factory
        self.session = session

    @property
    def shares_transaction(self) -> bool:
        return self.session is not None

    def create_appointment(
        self,
        *,
        patient_code: str,
        service_codes: list[str],
        plan_item_ids: list[int],
        draft: AppointmentDraft,
        timeout: float,
    ) -> AppointmentRef:
        code = generate_appointment_code()
        appointment = Appointment(
            appointment_code=code,
            patient_code=patient_code,
            employee_code=draft.employee_code,
            room_code=draft.room_code,
            start_time=draft.start_time,
            status=AppointmentStatus.scheduled,
            service_codes=list(service_codes),
            plan_item_ids=list(plan_item_ids),
            participant_codes=list(draft.participant_codes),
            notes=draft.notes,
        )
        if self.session is not None:
            self.session.add(appointment)
            self.session.flush()
        else:
            with self.session_factory() as db:
                db.add(appointment)
                db.commit()
        logger.info("Appointment %s created for patient %s", code, patient_code)
        return AppointmentRef(
            appointment_code=code,
            start_time=draft.start_time,
            status=AppointmentStatus.scheduled.value,
        )


class HttpAppointmentGateway:
    shares_transaction = False

    def __init__(self, base_url: str, *, client: httpx.Client | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client()

    def create_appointment(
        self,
        *,
        patient_code: str,
        service_codes: list[str],
        plan_item_ids: list[int],
        draft: AppointmentDraft,
        timeout: float,
    ) -> AppointmentRef:
        body = {
            "patient_code": patient_code,
            "service_codes": service_codes,
            "plan_item_ids": plan_item_ids,
            **draft.model_dump(mode="json"),
        }
        url = f"{self.base_url}/appointments"
        try:
            response = self.client.post(url, json=body, timeout=timeout)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise DependencyFailure(
                "Appointment service timed out", dependency="appointments", timeout=timeout
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise DependencyFailure(
                "Appointment service rejected the request",
                dependency="appointments",
                upstream_status=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise DependencyFailure(
                "Appointment service unreachable", dependency="appointments"
            ) from exc
        try:
            ref = AppointmentRefOut.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise DependencyFailure(
                "Appointment service returned an invalid response", dependency="appointments"
            ) from exc
        return AppointmentRef(
            appointment_code=ref.appointment_code,
            start_time=ref.start_time,
            status=ref.status,
        )


def build_gateway(
    settings: Settings,
    session_factory: Callable[[], Session],
    session: Session | None = None,
) -> AppointmentGateway:
    if settings.appointment_service_url:
        return HttpAppointmentGateway(settings.appointment_service_url)
    if session is not None and session.get_bind().dialect.name == "sqlite":
        return LocalAppointmentGateway(session=session)
    return LocalAppointmentGateway(session_factory)
