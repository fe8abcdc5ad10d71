from __future__ import annotations

from typing import Any


class TreatmentPlanError(Exception):
    """Base error for the treatment plan domain.

    Every subclass carries a stable ``code`` and the HTTP status the API layer
    renders it with. Extra keyword arguments end up in ``context`` and are
    returned to the client unchanged.
    """

    code = "treatment_plan_error"
    status_code = 400

    def __init__(self, message: str, *, code: str | None = None, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.context = context

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code, "detail": self.message}
        if self.context:
            data["context"] = self.context
        return data


class PlanValidationError(TreatmentPlanError):
    code = "validation_error"
    status_code = 400


class MissingReason(PlanValidationError):
    code = "missing_reason"


class SpecializationMismatch(PlanValidationError):
    code = "specialization_mismatch"

    def __init__(self, service_code: str, employee_code: str) -> None:
        super().__init__(
            f"Doctor {employee_code} lacks the specialization required by service {service_code}",
            service_code=service_code,
            employee_code=employee_code,
        )
        self.service_code = service_code
        self.employee_code = employee_code


class InvalidTransition(TreatmentPlanError):
    code = "invalid_transition"
    status_code = 409


class BookingRejected(InvalidTransition):
    code = "booking_rejected"

    def __init__(self, failures: list[dict[str, Any]]) -> None:
        super().__init__(
            "One or more items cannot be booked",
            failures=failures,
        )
        self.failures = failures


class NotFound(TreatmentPlanError):
    code = "not_found"
    status_code = 404


class PlanNotFound(NotFound):
    code = "plan_not_found"

    def __init__(self, plan_code: str) -> None:
        super().__init__(f"Treatment plan {plan_code} not found", plan_code=plan_code)


class TemplateNotFound(NotFound):
    code = "template_not_found"

    def __init__(self, template_code: str) -> None:
        super().__init__(f"Template {template_code} not found", template_code=template_code)


class ItemNotFound(NotFound):
    code = "item_not_found"

    def __init__(self, item_id: int) -> None:
        super().__init__(f"Plan item {item_id} not found", item_id=item_id)


class AccessDenied(TreatmentPlanError):
    code = "access_denied"
    status_code = 403


class ConcurrencyConflict(TreatmentPlanError):
    code = "concurrency_conflict"
    status_code = 409

    def __init__(self, message: str = "State changed, please retry", **context: Any) -> None:
        super().__init__(message, **context)


class DependencyFailure(TreatmentPlanError):
    code = "dependency_failure"
    status_code = 502
