from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JsonType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY columns.
LogIdType = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class ProvisioningRecord(Base):
    __tablename__ = "provisioning_records"

    # One row per tenant; the tenant id is the conflict target for upserts.
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    status: Mapped[str] = mapped_column(String, default="pending", nullable=False, index=True)
    business_entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
    messaging_account_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # True once discovery or the poller has observed the account.
    account_confirmed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    phone_number_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Stored masked; the canonical number lives with the provider.
    display_phone_number: Mapped[str | None] = mapped_column(String, nullable=True)
    verified_name: Mapped[str | None] = mapped_column(String, nullable=True)
    provider_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Sealed with Fernet when a credential key is configured.
    bearer_credential: Mapped[str | None] = mapped_column(Text, nullable=True)
    credential_expiry: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    granted_scopes: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)
    creation_strategy: Mapped[str | None] = mapped_column(String, nullable=True)
    polling_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class IntegrationLogEntry(Base):
    __tablename__ = "integration_logs"
    __table_args__ = (
        Index("ix_integration_logs_tenant_created", "tenant_id", "created_at"),
        Index("ix_integration_logs_tenant_step", "tenant_id", "step"),
    )

    # Append-only audit trail of every provisioning step attempt.
    id: Mapped[int] = mapped_column(LogIdType, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    step: Mapped[str] = mapped_column(String)
    strategy: Mapped[str | None] = mapped_column(String, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
