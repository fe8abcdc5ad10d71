from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.catalog import DentalService, Employee, Patient
from app.models.template import TreatmentPlanTemplate
from app.services.errors import NotFound


@dataclass(frozen=True)
class ServiceInfo:
    service_code: str
    service_name: str
    price: int
    default_duration_minutes: int | None
    specialization_code: str | None
    is_active: bool = True


@dataclass(frozen=True)
class EmployeeInfo:
    employee_code: str
    full_name: str
    is_active: bool


@dataclass(frozen=True)
class TemplateServiceSpec:
    service_code: str
    sequence_number: int
    quantity: int
    estimated_time_minutes: int | None


@dataclass(frozen=True)
class TemplatePhaseSpec:
    phase_number: int
    phase_name: str
    estimated_duration_days: int | None
    services: list[TemplateServiceSpec] = field(default_factory=list)


@dataclass(frozen=True)
class TemplateStructure:
    template_code: str
    template_name: str
    estimated_duration_days: int | None
    is_active: bool
    phases: list[TemplatePhaseSpec] = field(default_factory=list)


class ServiceDirectory(Protocol):
    def get_service(self, service_code: str) -> ServiceInfo | None: ...

    def resolve_required_specialization(self, service_code: str) -> str | None: ...

    def get_employee(self, employee_code: str) -> EmployeeInfo | None: ...

    def get_employee_specializations(self, employee_code: str) -> frozenset[str]: ...

    def patient_exists(self, patient_code: str) -> bool: ...


class TemplateDirectory(Protocol):
    def resolve_template(self, template_code: str) -> TemplateStructure | None: ...


class SqlServiceDirectory:
    def __init__(self, db: Session) -> None:
        self.db = db

    def get_service(self, service_code: str) -> ServiceInfo | None:
        service = self.db.scalar(
            select(DentalService).where(DentalService.service_code == service_code)
        )
        if service is None:
            return None
        return ServiceInfo(
            service_code=service.service_code,
            service_name=service.service_name,
            price=service.price,
            default_duration_minutes=service.default_duration_minutes,
            specialization_code=service.specialization.code if service.specialization else None,
            is_active=service.is_active,
        )

    def resolve_required_specialization(self, service_code: str) -> str | None:
        """Specialization a doctor needs for the service, ``None`` for general services."""
        service = self.get_service(service_code)
        if service is None:
            raise NotFound(
                f"Service {service_code} not found",
                code="service_not_found",
                service_code=service_code,
            )
        return service.specialization_code

    def get_employee(self, employee_code: str) -> EmployeeInfo | None:
        employee = self.db.scalar(select(Employee).where(Employee.employee_code == employee_code))
        if employee is None:
            return None
        return EmployeeInfo(
            employee_code=employee.employee_code,
            full_name=employee.full_name,
            is_active=employee.is_active,
        )

    def get_employee_specializations(self, employee_code: str) -> frozenset[str]:
        employee = self.db.scalar(select(Employee).where(Employee.employee_code == employee_code))
        if employee is None:
            return frozenset()
        return frozenset(spec.code for spec in employee.specializations if spec.is_active)

    def patient_exists(self, patient_code: str) -> bool:
        stmt = select(Patient.id).where(Patient.patient_code == patient_code).limit(1)
        return self.db.scalar(stmt) is not None


class SqlTemplateDirectory:
    def __init__(self, db: Session) -> None:
        self.db = db

    def resolve_template(self, template_code: str) -> TemplateStructure | None:
        template = self.db.scalar(
            select(TreatmentPlanTemplate).where(
                TreatmentPlanTemplate.template_code == template_code
            )
        )
        if template is None:
            return None
        return TemplateStructure(
            template_code=template.template_code,
            template_name=template.template_name,
            estimated_duration_days=template.estimated_duration_days,
            is_active=template.is_active,
            phases=[
                TemplatePhaseSpec(
                    phase_number=phase.phase_number,
                    phase_name=phase.phase_name,
                    estimated_duration_days=phase.estimated_duration_days,
                    services=[
                        TemplateServiceSpec(
                            service_code=entry.service_code,
                            sequence_number=entry.sequence_number,
                            quantity=entry.quantity,
                            estimated_time_minutes=entry.estimated_time_minutes,
                        )
                        for entry in phase.services
                    ],
                )
                for phase in template.phases
            ],
        )
