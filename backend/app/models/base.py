from datetime import datetime

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column


class Base(DeclarativeBase):
    pass


class AuditMixin:
    @declared_attr
    def created_at(cls) -> Mapped[datetime]:
        return mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    @declared_attr
    def updated_at(cls) -> Mapped[datetime]:
        return mapped_column(
            DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
        )

    @declared_attr
    def created_by(cls) -> Mapped[str]:
        return mapped_column(String(50), nullable=False)

    @declared_attr
    def updated_by(cls) -> Mapped[str | None]:
        return mapped_column(String(50), nullable=True)


class SoftDeleteMixin:
    @declared_attr
    def deleted_at(cls) -> Mapped[datetime | None]:
        return mapped_column(DateTime(timezone=True), nullable=True, index=True)

    @declared_attr
    def deleted_by(cls) -> Mapped[str | None]:
        return mapped_column(String(50), nullable=True)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None
