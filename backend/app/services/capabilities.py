from __future__ import annotations

from app.schemas.caller import Caller, CallerRole
from app.services.errors import AccessDenied

VIEW_OWN = "treatment_plans.view_own"
VIEW_ALL = "treatment_plans.view_all"
CREATE = "treatment_plans.create"
UPDATE = "treatment_plans.update"
APPROVE = "treatment_plans.approve"
DELETE = "treatment_plans.delete"
BOOK_FROM_PLAN = "appointments.book_from_plan"

CAPABILITIES: list[tuple[str, str]] = [
    (VIEW_OWN, "View own treatment plans"),
    (VIEW_ALL, "View treatment plans across patients"),
    (CREATE, "Create treatment plans"),
    (UPDATE, "Update treatment plans and item progress"),
    (APPROVE, "Approve or reject treatment plans"),
    (DELETE, "Delete treatment plans"),
    (BOOK_FROM_PLAN, "Book appointments from plan items"),
]

CAPABILITY_CODES = frozenset(code for code, _ in CAPABILITIES)


def effective_capabilities(caller: Caller) -> frozenset[str]:
    if caller.role == CallerRole.admin:
        return CAPABILITY_CODES
    return frozenset(code for code in caller.permissions if code in CAPABILITY_CODES)


def has_capability(caller: Caller, *codes: str) -> bool:
    granted = effective_capabilities(caller)
    return any(code in granted for code in codes)


def require_capability(caller: Caller, *codes: str) -> None:
    if not has_capability(caller, *codes):
        raise AccessDenied(
            f"Missing capability: {' or '.join(codes)}",
            required=list(codes),
        )
