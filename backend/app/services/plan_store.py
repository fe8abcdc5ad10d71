from __future__ import annotations

from typing import Any, Iterable

from sqlalchemy import ColumnElement, func, select, update
from sqlalchemy.orm import Session

from app.models.treatment_plan import (
    ApprovalStatus,
    PlanItem,
    PlanItemAppointment,
    PlanItemStatus,
    TreatmentPlan,
)


class PlanStore:
    """Session-backed persistence for plan trees.

    The store never commits; callers own the transaction boundary.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def get_plan(self, plan_code: str, *, for_update: bool = False) -> TreatmentPlan | None:
        stmt = select(TreatmentPlan).where(
            TreatmentPlan.plan_code == plan_code,
            TreatmentPlan.deleted_at.is_(None),
        )
        if for_update:
            stmt = stmt.with_for_update(of=TreatmentPlan).execution_options(
                populate_existing=True
            )
        return self.db.scalar(stmt)

    def get_item(self, item_id: int, *, for_update: bool = False) -> PlanItem | None:
        stmt = (
            select(PlanItem)
            .join(TreatmentPlan, TreatmentPlan.id == PlanItem.plan_id)
            .where(PlanItem.id == item_id, TreatmentPlan.deleted_at.is_(None))
        )
        if for_update:
            stmt = stmt.with_for_update(of=PlanItem).execution_options(populate_existing=True)
        return self.db.scalar(stmt)

    def get_items(self, plan_id: int, item_ids: Iterable[int]) -> list[PlanItem]:
        stmt = (
            select(PlanItem)
            .where(PlanItem.plan_id == plan_id, PlanItem.id.in_(list(item_ids)))
            .order_by(PlanItem.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(self.db.scalars(stmt))

    def plan_code_exists(self, plan_code: str) -> bool:
        # soft-deleted plans keep their code
        stmt = select(TreatmentPlan.id).where(TreatmentPlan.plan_code == plan_code).limit(1)
        return self.db.scalar(stmt) is not None

    def add_plan(self, plan: TreatmentPlan) -> TreatmentPlan:
        self.db.add(plan)
        self.db.flush()
        return plan

    def query_plans(
        self, conditions: list[ColumnElement[bool]], *, page: int, size: int
    ) -> tuple[list[TreatmentPlan], int]:
        base = [TreatmentPlan.deleted_at.is_(None), *conditions]
        total = self.db.scalar(select(func.count(TreatmentPlan.id)).where(*base)) or 0
        stmt = (
            select(TreatmentPlan)
            .where(*base)
            .order_by(TreatmentPlan.created_at.desc(), TreatmentPlan.id.desc())
            .offset(page * size)
            .limit(size)
        )
        return list(self.db.scalars(stmt)), total

    def claim_items(self, plan_id: int, item_ids: list[int]) -> int:
        """READY_FOR_BOOKING -> SCHEDULED for exactly the given items.

        Returns the number of rows that actually moved; a short count means
        another transaction got to some of the items first.
        """
        result = self.db.execute(
            update(PlanItem)
            .where(
                PlanItem.plan_id == plan_id,
                PlanItem.id.in_(item_ids),
                PlanItem.status == PlanItemStatus.ready_for_booking,
            )
            .values(status=PlanItemStatus.scheduled)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    def update_approval(
        self,
        plan_id: int,
        *,
        expected: ApprovalStatus,
        target: ApprovalStatus,
        values: dict[str, Any],
    ) -> int:
        result = self.db.execute(
            update(TreatmentPlan)
            .where(
                TreatmentPlan.id == plan_id,
                TreatmentPlan.approval_status == expected,
                TreatmentPlan.deleted_at.is_(None),
            )
            .values(approval_status=target, **values)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    def link_appointment(
        self, items: Iterable[PlanItem], appointment_code: str, *, linked_by: str | None
    ) -> list[PlanItemAppointment]:
        created: list[PlanItemAppointment] = []
        for item in items:
            if appointment_code in item.appointment_codes:
                continue
            link = PlanItemAppointment(appointment_code=appointment_code, linked_by=linked_by)
            item.linked_appointments.append(link)
            created.append(link)
        self.db.flush()
        return created
