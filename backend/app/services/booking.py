from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.settings import settings
from app.models.treatment_plan import ApprovalStatus, PlanItem, PlanItemStatus, TreatmentPlan
from app.schemas.appointment import AppointmentDraft
from app.schemas.caller import Caller
from app.services.appointments import AppointmentGateway, AppointmentRef
from app.services.audit import log_event
from app.services.errors import (
    BookingRejected,
    ConcurrencyConflict,
    DependencyFailure,
    PlanNotFound,
    PlanValidationError,
)
from app.services.lifecycle import start_phases
from app.services.plan_store import PlanStore

logger = logging.getLogger("clinic_plans.booking")


@dataclass
class BookingResult:
    plan: TreatmentPlan
    appointment: AppointmentRef | None
    booked_items: list[PlanItem] = field(default_factory=list)
    already_scheduled_item_ids: list[int] = field(default_factory=list)


@dataclass
class _Snapshot:
    plan: TreatmentPlan
    to_book: list[PlanItem]
    skipped: list[int]


def _dedupe(item_ids: list[int]) -> list[int]:
    seen: dict[int, None] = {}
    for item_id in item_ids:
        seen.setdefault(item_id, None)
    return list(seen)


class ItemBookingCoordinator:
    """Turns READY_FOR_BOOKING items of an approved plan into one appointment.

    The batch is all-or-nothing: every requested item is claimed with a
    conditional update before the appointment is created, and nothing is
    claimed when any item fails its preconditions.
    """

    def __init__(
        self,
        db: Session,
        gateway: AppointmentGateway,
        *,
        store: PlanStore | None = None,
        max_retries: int | None = None,
        persist_retries: int | None = None,
        timeout: float | None = None,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.store = store or PlanStore(db)
        self.max_retries = max_retries or settings.conflict_max_retries
        self.persist_retries = persist_retries or settings.booking_persist_retries
        self.timeout = timeout or settings.appointment_timeout_seconds

    def book_items(
        self,
        caller: Caller,
        plan_code: str,
        item_ids: list[int],
        draft: AppointmentDraft,
        *,
        retry: bool = False,
    ) -> BookingResult:
        requested = _dedupe(item_ids)
        if not requested:
            raise PlanValidationError(
                "At least one item is required for booking", code="no_items", plan_code=plan_code
            )
        for attempt in range(1, self.max_retries + 1):
            try:
                return self._attempt(caller, plan_code, requested, draft, retry=retry)
            except ConcurrencyConflict:
                self.db.rollback()
                logger.warning(
                    "Booking race on plan %s items %s, attempt %s/%s",
                    plan_code,
                    requested,
                    attempt,
                    self.max_retries,
                )
        raise ConcurrencyConflict(plan_code=plan_code, item_ids=requested)

    def _load_snapshot(self, plan_code: str, item_ids: list[int], *, retry: bool) -> _Snapshot:
        plan = self.store.get_plan(plan_code, for_update=True)
        if plan is None:
            raise PlanNotFound(plan_code)
        items = {item.id: item for item in self.store.get_items(plan.id, item_ids)}

        failures: list[dict[str, Any]] = []
        if plan.approval_status != ApprovalStatus.approved:
            failures.append(
                {
                    "item_id": None,
                    "precondition": "plan_approved",
                    "current_status": plan.approval_status.value,
                }
            )
        to_book: list[PlanItem] = []
        skipped: list[int] = []
        for item_id in item_ids:
            item = items.get(item_id)
            if item is None:
                failures.append(
                    {"item_id": item_id, "precondition": "item_in_plan", "current_status": None}
                )
                continue
            if (
                retry
                and item.status == PlanItemStatus.scheduled
                and item.linked_appointments
            ):
                skipped.append(item_id)
                continue
            if item.status != PlanItemStatus.ready_for_booking:
                failures.append(
                    {
                        "item_id": item_id,
                        "precondition": "item_ready_for_booking",
                        "current_status": item.status.value,
                    }
                )
                continue
            to_book.append(item)
        if failures:
            logger.info("Booking on plan %s rejected: %s", plan_code, failures)
            raise BookingRejected(failures)
        return _Snapshot(plan=plan, to_book=to_book, skipped=skipped)

    def _attempt(
        self,
        caller: Caller,
        plan_code: str,
        item_ids: list[int],
        draft: AppointmentDraft,
        *,
        retry: bool,
    ) -> BookingResult:
        snapshot = self._load_snapshot(plan_code, item_ids, retry=retry)
        plan = snapshot.plan
        if not snapshot.to_book:
            self.db.rollback()
            logger.info("Nothing left to book on plan %s; items %s", plan_code, snapshot.skipped)
            return BookingResult(
                plan=self.store.get_plan(plan_code),
                appointment=None,
                already_scheduled_item_ids=snapshot.skipped,
            )

        book_ids = [item.id for item in snapshot.to_book]
        claimed = self.store.claim_items(plan.id, book_ids)
        if claimed != len(book_ids):
            raise ConcurrencyConflict(plan_code=plan_code, item_ids=book_ids)

        try:
            ref = self.gateway.create_appointment(
                patient_code=plan.patient_code,
                service_codes=[item.service_code for item in snapshot.to_book],
                plan_item_ids=book_ids,
                draft=draft,
                timeout=self.timeout,
            )
        except DependencyFailure:
            self.db.rollback()
            logger.exception("Appointment creation failed for plan %s", plan_code)
            raise
        except Exception as exc:
            self.db.rollback()
            logger.exception("Appointment creation failed for plan %s", plan_code)
            raise DependencyFailure(
                "Appointment could not be created",
                dependency="appointments",
                plan_code=plan_code,
                item_ids=book_ids,
            ) from exc

        self._persist(caller, plan_code, book_ids, ref)
        result_plan = self.store.get_plan(plan_code)
        booked = [item for item in result_plan.items if item.id in set(book_ids)]
        logger.info(
            "Plan %s items %s booked into appointment %s",
            plan_code,
            book_ids,
            ref.appointment_code,
        )
        return BookingResult(
            plan=result_plan,
            appointment=ref,
            booked_items=booked,
            already_scheduled_item_ids=snapshot.skipped,
        )

    def _write_links(
        self, caller: Caller, plan_code: str, items: list[PlanItem], ref: AppointmentRef
    ) -> None:
        start_phases(items)
        self.store.link_appointment(items, ref.appointment_code, linked_by=caller.identity)
        log_event(
            self.db,
            actor=caller,
            action="treatment_plan.items_booked",
            entity_type="treatment_plan",
            entity_id=plan_code,
            after_data={
                "appointment_code": ref.appointment_code,
                "item_ids": [item.id for item in items],
            },
        )

    def _persist(
        self, caller: Caller, plan_code: str, book_ids: list[int], ref: AppointmentRef
    ) -> None:
        try:
            plan = self.store.get_plan(plan_code)
            items = [item for item in plan.items if item.id in set(book_ids)]
            self._write_links(caller, plan_code, items, ref)
            self.db.commit()
            return
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception(
                "Persisting booking of plan %s to appointment %s failed",
                plan_code,
                ref.appointment_code,
            )
            if getattr(self.gateway, "shares_transaction", False):
                # the appointment row went down with the same rollback
                raise DependencyFailure(
                    "Booking could not be saved",
                    code="booking_not_persisted",
                    dependency="database",
                    plan_code=plan_code,
                    item_ids=book_ids,
                ) from exc

        for attempt in range(1, self.persist_retries + 1):
            try:
                self._reapply(caller, plan_code, book_ids, ref)
                self.db.commit()
                logger.warning(
                    "Booking of plan %s to appointment %s persisted on retry %s",
                    plan_code,
                    ref.appointment_code,
                    attempt,
                )
                return
            except SQLAlchemyError:
                self.db.rollback()
                logger.exception(
                    "Retry %s/%s persisting appointment %s failed",
                    attempt,
                    self.persist_retries,
                    ref.appointment_code,
                )
        logger.error(
            "Appointment %s exists but plan %s items %s were not updated",
            ref.appointment_code,
            plan_code,
            book_ids,
        )
        raise DependencyFailure(
            f"Appointment {ref.appointment_code} was created but the plan could not be updated",
            code="orphaned_appointment",
            appointment_code=ref.appointment_code,
            plan_code=plan_code,
            item_ids=book_ids,
        )

    def _reapply(
        self, caller: Caller, plan_code: str, book_ids: list[int], ref: AppointmentRef
    ) -> None:
        """Idempotent replay of the booking keyed by appointment code."""
        plan = self.store.get_plan(plan_code, for_update=True)
        if plan is None:
            raise PlanNotFound(plan_code)
        items = self.store.get_items(plan.id, book_ids)
        stray: list[int] = []
        for item in items:
            if ref.appointment_code in item.appointment_codes:
                continue
            if item.status == PlanItemStatus.ready_for_booking:
                item.status = PlanItemStatus.scheduled
            else:
                stray.append(item.id)
        if stray:
            self.db.rollback()
            raise DependencyFailure(
                f"Appointment {ref.appointment_code} was created but items changed meanwhile",
                code="orphaned_appointment",
                appointment_code=ref.appointment_code,
                plan_code=plan_code,
                item_ids=stray,
            )
        self._write_links(caller, plan_code, items, ref)
