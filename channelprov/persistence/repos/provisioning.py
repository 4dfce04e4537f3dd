from __future__ import annotations

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from channelprov.core.errors import DatabaseError
from channelprov.domain.models import IntegrationLogEntry, ProvisioningRecord


_RECORD_COLUMNS = frozenset(column.name for column in ProvisioningRecord.__table__.columns)
_IMMUTABLE_COLUMNS = frozenset({"tenant_id", "created_at"})


def _insert_for(session: AsyncSession):
    # ON CONFLICT is dialect-specific; Postgres in production, SQLite in tests.
    dialect = session.bind.dialect.name if session.bind is not None else "postgresql"
    if dialect == "sqlite":
        return sqlite.insert
    if dialect == "postgresql":
        return postgresql.insert
    raise DatabaseError(f"unsupported dialect for upsert: {dialect}")


async def get_record(session: AsyncSession, tenant_id: str) -> ProvisioningRecord | None:
    result = await session.execute(
        select(ProvisioningRecord)
        .where(ProvisioningRecord.tenant_id == tenant_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def upsert_record(session: AsyncSession, tenant_id: str, **fields: Any) -> ProvisioningRecord:
    unknown = set(fields) - _RECORD_COLUMNS
    if unknown:
        raise DatabaseError(f"unknown provisioning record fields: {sorted(unknown)}")
    changes = {key: value for key, value in fields.items() if key not in _IMMUTABLE_COLUMNS}

    # Single statement keyed on tenant_id so concurrent writers never create two rows.
    insert = _insert_for(session)
    stmt = insert(ProvisioningRecord).values(tenant_id=tenant_id, **changes)
    if changes:
        stmt = stmt.on_conflict_do_update(
            index_elements=[ProvisioningRecord.tenant_id],
            set_={**changes, "updated_at": func.now()},
        )
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=[ProvisioningRecord.tenant_id])
    await session.execute(stmt)

    record = await get_record(session, tenant_id)
    if record is None:
        raise DatabaseError("provisioning record upsert failed unexpectedly")
    return record


async def append_log(
    session: AsyncSession,
    *,
    tenant_id: str,
    step: str,
    success: bool,
    strategy: str | None = None,
    error_message: str | None = None,
    details: dict[str, Any] | None = None,
) -> IntegrationLogEntry:
    entry = IntegrationLogEntry(
        tenant_id=tenant_id,
        step=step,
        strategy=strategy,
        success=success,
        error_message=error_message,
        details=details or {},
    )
    session.add(entry)
    await session.flush()
    return entry


async def list_logs(
    session: AsyncSession,
    tenant_id: str,
    *,
    step: str | None = None,
    limit: int = 50,
) -> list[IntegrationLogEntry]:
    stmt = select(IntegrationLogEntry).where(IntegrationLogEntry.tenant_id == tenant_id)
    if step:
        stmt = stmt.where(IntegrationLogEntry.step == step)
    # Newest first; id breaks ties within the same timestamp.
    stmt = stmt.order_by(IntegrationLogEntry.created_at.desc(), IntegrationLogEntry.id.desc()).limit(
        max(1, int(limit))
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())
