from __future__ import annotations

import logging

from sqlalchemy import ColumnElement, false, or_, true

from app.models.catalog import Patient
from app.models.treatment_plan import TreatmentPlan
from app.schemas.caller import Caller, CallerRole
from app.schemas.treatment_plan import PlanListFilters
from app.services import capabilities as caps
from app.services.errors import AccessDenied

logger = logging.getLogger("clinic_plans.rbac")


def scope_predicate(caller: Caller) -> ColumnElement[bool]:
    """Rows of ``treatment_plans`` the caller may see.

    The role decides the scope before any permission is looked at, so an
    employee holding ``treatment_plans.view_all`` is still limited to the plans
    they treat or created.
    """
    if caller.role == CallerRole.admin:
        return true()
    if caller.role == CallerRole.patient:
        if not caller.patient_code:
            return false()
        return TreatmentPlan.patient_code == caller.patient_code
    if not caller.employee_code:
        return false()
    return or_(
        TreatmentPlan.doctor_employee_code == caller.employee_code,
        TreatmentPlan.created_by == caller.employee_code,
    )


def filter_predicates(filters: PlanListFilters | None) -> list[ColumnElement[bool]]:
    if filters is None:
        return []
    conditions: list[ColumnElement[bool]] = []
    if filters.status is not None:
        conditions.append(TreatmentPlan.status == filters.status)
    if filters.approval_status is not None:
        conditions.append(TreatmentPlan.approval_status == filters.approval_status)
    if filters.patient_code:
        conditions.append(TreatmentPlan.patient_code == filters.patient_code)
    if filters.doctor_employee_code:
        conditions.append(TreatmentPlan.doctor_employee_code == filters.doctor_employee_code)
    term = (filters.search_term or "").strip()
    if term:
        like = f"%{term}%"
        conditions.append(
            or_(
                TreatmentPlan.plan_name.ilike(like),
                TreatmentPlan.patient.has(
                    or_(Patient.first_name.ilike(like), Patient.last_name.ilike(like))
                ),
            )
        )
    return conditions


def list_conditions(caller: Caller, filters: PlanListFilters | None) -> list[ColumnElement[bool]]:
    caps.require_capability(caller, caps.VIEW_OWN, caps.VIEW_ALL)
    return [scope_predicate(caller), *filter_predicates(filters)]


def _owns(caller: Caller, plan: TreatmentPlan) -> bool:
    if caller.role == CallerRole.admin:
        return True
    if caller.role == CallerRole.patient:
        return bool(caller.patient_code) and plan.patient_code == caller.patient_code
    if not caller.employee_code:
        return False
    return caller.employee_code in {plan.doctor_employee_code, plan.created_by}


def can_view(caller: Caller, plan: TreatmentPlan) -> bool:
    if not _owns(caller, plan):
        return False
    return caps.has_capability(caller, caps.VIEW_OWN, caps.VIEW_ALL)


def can_modify(caller: Caller, plan: TreatmentPlan) -> bool:
    if caller.role == CallerRole.patient:
        return False
    return _owns(caller, plan)


def ensure_can_view(caller: Caller, plan: TreatmentPlan) -> None:
    if not can_view(caller, plan):
        logger.info(
            "Denied view of plan %s to %s %s", plan.plan_code, caller.role.value, caller.identity
        )
        raise AccessDenied("You cannot view this treatment plan", plan_code=plan.plan_code)


def ensure_can_modify(caller: Caller, plan: TreatmentPlan) -> None:
    if not can_modify(caller, plan):
        logger.info(
            "Denied change of plan %s to %s %s", plan.plan_code, caller.role.value, caller.identity
        )
        raise AccessDenied("You cannot modify this treatment plan", plan_code=plan.plan_code)


def ensure_not_patient(caller: Caller) -> None:
    if caller.role == CallerRole.patient:
        raise AccessDenied("Patients cannot change treatment plans")


def ensure_admin(caller: Caller) -> None:
    if caller.role != CallerRole.admin:
        raise AccessDenied("Administrator role required")
