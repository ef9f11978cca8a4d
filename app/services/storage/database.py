from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import StorageUnavailable
from app.models.recovery_record import RecoveryRecord
from app.services.storage.adapter import Criteria, DuplicateKey, Record, RecordStore

logger = logging.getLogger(__name__)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back; every stored timestamp is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_record(row: RecoveryRecord) -> Record:
    return Record(
        namespace=row.namespace,
        key=row.key,
        payload=dict(row.payload or {}),
        owner=row.owner,
        expires_at=_aware(row.expires_at),
        version=row.version,
    )


def _conditions(namespace: str, criteria: Criteria | None) -> list:
    conditions = [RecoveryRecord.namespace == namespace]
    if criteria is None:
        return conditions
    if criteria.owner is not None:
        conditions.append(RecoveryRecord.owner == criteria.owner)
    if criteria.expires_before is not None:
        conditions.append(RecoveryRecord.expires_at.is_not(None))
        conditions.append(RecoveryRecord.expires_at < criteria.expires_before)
    return conditions


class SqlRecordStore(RecordStore):
    """Durable record store over the ``recovery_records`` table.

    Compare-and-set is a single ``UPDATE ... WHERE version = :expected`` so
    it stays atomic across processes sharing the database.
    """

    backend = "database"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except (DuplicateKey, StorageUnavailable):
            raise
        except SQLAlchemyError as exc:
            logger.error("Record store operation failed: %s", exc.__class__.__name__)
            raise StorageUnavailable() from exc

    async def put(self, record: Record) -> Record:
        async with self._session() as session:
            row = RecoveryRecord(
                namespace=record.namespace,
                key=record.key,
                owner=record.owner,
                expires_at=record.expires_at,
                payload=record.payload,
                version=1,
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateKey(f"{record.namespace}:{record.key}") from exc
        return Record(
            namespace=record.namespace,
            key=record.key,
            payload=dict(record.payload),
            owner=record.owner,
            expires_at=record.expires_at,
            version=1,
        )

    async def get(self, namespace: str, key: str) -> Record | None:
        async with self._session() as session:
            row = await session.get(RecoveryRecord, (namespace, key))
            return _to_record(row) if row is not None else None

    async def replace(self, record: Record, expected_version: int) -> bool:
        stmt = (
            update(RecoveryRecord)
            .where(
                RecoveryRecord.namespace == record.namespace,
                RecoveryRecord.key == record.key,
                RecoveryRecord.version == expected_version,
            )
            .values(
                payload=record.payload,
                owner=record.owner,
                expires_at=record.expires_at,
                version=expected_version + 1,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def delete(self, namespace: str, key: str) -> bool:
        return await self._delete(_conditions(namespace, None) + [RecoveryRecord.key == key]) > 0

    async def delete_where(self, namespace: str, criteria: Criteria) -> int:
        return await self._delete(_conditions(namespace, criteria))

    async def _delete(self, conditions: list) -> int:
        stmt = delete(RecoveryRecord).where(*conditions).execution_options(synchronize_session=False)
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0

    async def find(self, namespace: str, criteria: Criteria | None = None) -> list[Record]:
        stmt = (
            select(RecoveryRecord)
            .where(*_conditions(namespace, criteria))
            .order_by(RecoveryRecord.created_at, RecoveryRecord.key)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            return [_to_record(row) for row in result.scalars().all()]

    async def count(self, namespace: str, criteria: Criteria | None = None) -> int:
        stmt = select(func.count()).select_from(RecoveryRecord).where(*_conditions(namespace, criteria))
        async with self._session() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def ping(self) -> None:
        async with self._session() as session:
            await session.execute(text("SELECT 1"))
