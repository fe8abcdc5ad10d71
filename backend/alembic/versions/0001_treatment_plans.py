"""treatment plan schema

Revision ID: 0001_treatment_plans
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_treatment_plans"
down_revision = None
branch_labels = None
depends_on = None


def _audit_columns() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("created_by", sa.String(length=50), nullable=False),
        sa.Column("updated_by", sa.String(length=50), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_by", sa.String(length=50), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "specializations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("code", sa.String(length=50), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.UniqueConstraint("code"),
    )
    op.create_index("ix_specializations_code", "specializations", ["code"])

    op.create_table(
        "dental_services",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("service_code", sa.String(length=50), nullable=False),
        sa.Column("service_name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("specialization_id", sa.Integer(), sa.ForeignKey("specializations.id"), nullable=True),
        sa.Column("price", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("default_duration_minutes", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.UniqueConstraint("service_code"),
    )
    op.create_index("ix_dental_services_service_code", "dental_services", ["service_code"])

    op.create_table(
        "employees",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("employee_code", sa.String(length=50), nullable=False),
        sa.Column("first_name", sa.String(length=100), nullable=False),
        sa.Column("last_name", sa.String(length=100), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.UniqueConstraint("employee_code"),
    )
    op.create_index("ix_employees_employee_code", "employees", ["employee_code"])

    op.create_table(
        "employee_specializations",
        sa.Column("employee_id", sa.Integer(), sa.ForeignKey("employees.id"), primary_key=True),
        sa.Column("specialization_id", sa.Integer(), sa.ForeignKey("specializations.id"), primary_key=True),
    )

    op.create_table(
        "patients",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("patient_code", sa.String(length=50), nullable=False),
        sa.Column("first_name", sa.String(length=100), nullable=False),
        sa.Column("last_name", sa.String(length=100), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("patient_code"),
    )
    op.create_index("ix_patients_patient_code", "patients", ["patient_code"])

    op.create_table(
        "treatment_plan_templates",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("template_code", sa.String(length=50), nullable=False),
        sa.Column("template_name", sa.String(length=200), nullable=False),
        sa.Column("estimated_duration_days", sa.Integer(), nullable=True),
        sa.Column("specialization_id", sa.Integer(), sa.ForeignKey("specializations.id"), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.UniqueConstraint("template_code"),
    )
    op.create_index("ix_treatment_plan_templates_template_code", "treatment_plan_templates", ["template_code"])

    op.create_table(
        "template_phases",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("template_id", sa.Integer(), sa.ForeignKey("treatment_plan_templates.id"), nullable=False),
        sa.Column("phase_number", sa.Integer(), nullable=False),
        sa.Column("phase_name", sa.String(length=200), nullable=False),
        sa.Column("estimated_duration_days", sa.Integer(), nullable=True),
        sa.UniqueConstraint("template_id", "phase_number"),
    )

    op.create_table(
        "template_phase_services",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("phase_id", sa.Integer(), sa.ForeignKey("template_phases.id"), nullable=False),
        sa.Column(
            "service_code",
            sa.String(length=50),
            sa.ForeignKey("dental_services.service_code"),
            nullable=False,
        ),
        sa.Column("sequence_number", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("estimated_time_minutes", sa.Integer(), nullable=True),
        sa.UniqueConstraint("phase_id", "sequence_number"),
    )

    op.create_table(
        "treatment_plans",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("plan_code", sa.String(length=50), nullable=False),
        sa.Column("plan_name", sa.String(length=255), nullable=False),
        sa.Column(
            "patient_code",
            sa.String(length=50),
            sa.ForeignKey("patients.patient_code"),
            nullable=False,
        ),
        sa.Column(
            "doctor_employee_code",
            sa.String(length=50),
            sa.ForeignKey("employees.employee_code"),
            nullable=False,
        ),
        sa.Column("source_template_code", sa.String(length=50), nullable=True),
        sa.Column(
            "status",
            sa.Enum("draft", "in_progress", "completed", "cancelled", name="treatment_plan_status"),
            nullable=False,
            server_default="in_progress",
        ),
        sa.Column(
            "approval_status",
            sa.Enum(
                "draft",
                "pending_approval",
                "approved",
                "rejected",
                name="treatment_plan_approval_status",
            ),
            nullable=False,
            server_default="draft",
        ),
        sa.Column(
            "payment_type",
            sa.Enum("full", "phased", "installment", name="treatment_plan_payment_type"),
            nullable=True,
        ),
        sa.Column("total_price", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("discount_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("final_cost", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("expected_end_date", sa.Date(), nullable=True),
        sa.Column("submit_notes", sa.Text(), nullable=True),
        sa.Column("approved_by", sa.String(length=50), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approval_notes", sa.Text(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("reviewed_by", sa.String(length=50), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        *_audit_columns(),
        sa.UniqueConstraint("plan_code"),
    )
    op.create_index("ix_treatment_plans_plan_code", "treatment_plans", ["plan_code"])
    op.create_index("ix_treatment_plans_patient_code", "treatment_plans", ["patient_code"])
    op.create_index(
        "ix_treatment_plans_doctor_employee_code", "treatment_plans", ["doctor_employee_code"]
    )
    op.create_index("ix_treatment_plans_deleted_at", "treatment_plans", ["deleted_at"])

    op.create_table(
        "treatment_plan_phases",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("plan_id", sa.Integer(), sa.ForeignKey("treatment_plans.id"), nullable=False),
        sa.Column("phase_number", sa.Integer(), nullable=False),
        sa.Column("phase_name", sa.String(length=200), nullable=False),
        sa.Column("estimated_duration_days", sa.Integer(), nullable=True),
        sa.Column(
            "status",
            sa.Enum("pending", "in_progress", "completed", name="treatment_plan_phase_status"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("plan_id", "phase_number", name="uq_treatment_plan_phases_number"),
    )

    op.create_table(
        "treatment_plan_items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("plan_id", sa.Integer(), sa.ForeignKey("treatment_plans.id"), nullable=False),
        sa.Column("phase_id", sa.Integer(), sa.ForeignKey("treatment_plan_phases.id"), nullable=False),
        sa.Column(
            "service_code",
            sa.String(length=50),
            sa.ForeignKey("dental_services.service_code"),
            nullable=False,
        ),
        sa.Column("item_name", sa.String(length=255), nullable=False),
        sa.Column("sequence_number", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("price", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("estimated_time_minutes", sa.Integer(), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "pending",
                "ready_for_booking",
                "scheduled",
                "completed",
                "cancelled",
                name="treatment_plan_item_status",
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("phase_id", "sequence_number", name="uq_treatment_plan_items_sequence"),
    )
    op.create_index(
        "ix_treatment_plan_items_plan_status", "treatment_plan_items", ["plan_id", "status"]
    )

    op.create_table(
        "treatment_plan_item_appointments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("item_id", sa.Integer(), sa.ForeignKey("treatment_plan_items.id"), nullable=False),
        sa.Column("appointment_code", sa.String(length=50), nullable=False),
        sa.Column("linked_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("linked_by", sa.String(length=50), nullable=True),
        sa.UniqueConstraint("item_id", "appointment_code", name="uq_plan_item_appointment"),
    )
    op.create_index(
        "ix_treatment_plan_item_appointments_appointment_code",
        "treatment_plan_item_appointments",
        ["appointment_code"],
    )

    op.create_table(
        "appointments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("appointment_code", sa.String(length=50), nullable=False),
        sa.Column("patient_code", sa.String(length=50), nullable=False),
        sa.Column("employee_code", sa.String(length=50), nullable=False),
        sa.Column("room_code", sa.String(length=50), nullable=True),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "status",
            sa.Enum("scheduled", "cancelled", "completed", name="appointment_status"),
            nullable=False,
            server_default="scheduled",
        ),
        sa.Column("service_codes", sa.JSON(), nullable=False),
        sa.Column("plan_item_ids", sa.JSON(), nullable=False),
        sa.Column("participant_codes", sa.JSON(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("appointment_code"),
    )
    op.create_index("ix_appointments_appointment_code", "appointments", ["appointment_code"])
    op.create_index("ix_appointments_patient_code", "appointments", ["patient_code"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("actor_code", sa.String(length=50), nullable=True),
        sa.Column("actor_role", sa.String(length=20), nullable=True),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("before_json", sa.JSON(), nullable=True),
        sa.Column("after_json", sa.JSON(), nullable=True),
    )
    op.create_index("ix_audit_logs_entity_id", "audit_logs", ["entity_id"])


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("appointments")
    op.drop_table("treatment_plan_item_appointments")
    op.drop_table("treatment_plan_items")
    op.drop_table("treatment_plan_phases")
    op.drop_table("treatment_plans")
    op.drop_table("template_phase_services")
    op.drop_table("template_phases")
    op.drop_table("treatment_plan_templates")
    op.drop_table("patients")
    op.drop_table("employee_specializations")
    op.drop_table("employees")
    op.drop_table("dental_services")
    op.drop_table("specializations")
    for enum_name in (
        "appointment_status",
        "treatment_plan_item_status",
        "treatment_plan_phase_status",
        "treatment_plan_payment_type",
        "treatment_plan_approval_status",
        "treatment_plan_status",
    ):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
