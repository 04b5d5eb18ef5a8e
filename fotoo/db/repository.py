from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fotoo.core.logging import get_logger

from .models import AssetStatus, MediaAsset


@dataclass(slots=True)
class AssetRecord:
    """Detached snapshot of a media asset row.

    Jobs work on this copy and write it back in a single statement per state
    transition; ORM instances never outlive the session that loaded them.
    """

    id: str
    owner_id: str
    bucket: str
    key: str
    mime_type: str
    size: int
    status: AssetStatus
    created_at: datetime
    updated_at: datetime
    captured_at: Optional[datetime] = None
    error: Optional[str] = None
    processing_started_at: Optional[datetime] = None
    processed_key: Optional[str] = None
    processed_mime_type: Optional[str] = None
    processed_size: Optional[int] = None
    thumbnail_key: Optional[str] = None
    thumbnail_mime_type: Optional[str] = None
    thumbnail_size: Optional[int] = None
    thumbnail_width: Optional[int] = None
    thumbnail_height: Optional[int] = None

    @classmethod
    def from_model(cls, row: MediaAsset) -> "AssetRecord":
        return cls(**{field.name: getattr(row, field.name) for field in fields(cls)})


# Columns written back by ``save``; identity and upload metadata are immutable.
_MUTABLE_FIELDS = (
    "status",
    "error",
    "processing_started_at",
    "processed_key",
    "processed_mime_type",
    "processed_size",
    "thumbnail_key",
    "thumbnail_mime_type",
    "thumbnail_size",
    "thumbnail_width",
    "thumbnail_height",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AssetRecordStore:
    """Key-addressed persistence for media assets.

    Each public method opens its own session and commits before returning, so
    every state transition is one atomic write.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self.logger = get_logger(component="asset_record_store")

    async def create(
        self,
        *,
        owner_id: str,
        bucket: str,
        key: str,
        mime_type: str,
        size: int,
        captured_at: datetime | None = None,
        asset_id: str | None = None,
    ) -> AssetRecord:
        now = _utcnow()
        row = MediaAsset(
            id=asset_id or str(uuid4()),
            owner_id=owner_id,
            bucket=bucket,
            key=key,
            mime_type=mime_type,
            size=size,
            captured_at=captured_at,
            status=AssetStatus.pending,
            created_at=now,
            updated_at=now,
        )
        async with self.session_factory() as session:
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return AssetRecord.from_model(row)

    async def load(self, asset_id: str) -> AssetRecord | None:
        async with self.session_factory() as session:
            row = await session.get(MediaAsset, asset_id)
            return AssetRecord.from_model(row) if row else None

    async def list_for_owner(self, owner_id: str, *, limit: int = 50) -> list[AssetRecord]:
        stmt = (
            select(MediaAsset)
            .where(MediaAsset.owner_id == owner_id)
            .order_by(MediaAsset.captured_at.desc(), MediaAsset.created_at.desc())
            .limit(limit)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [AssetRecord.from_model(row) for row in rows]

    async def save(self, record: AssetRecord) -> AssetRecord:
        values = {name: getattr(record, name) for name in _MUTABLE_FIELDS}
        values["updated_at"] = _utcnow()
        stmt = update(MediaAsset).where(MediaAsset.id == record.id).values(**values)
        async with self.session_factory() as session:
            result = await session.execute(stmt.execution_options(synchronize_session=False))
            await session.commit()
        if result.rowcount == 0:
            # Deleted while the job was running; the write is dropped.
            self.logger.warning("asset_save_skipped_missing_row", asset_id=record.id)
            return record
        return await self.load(record.id) or record

    async def update_status(self, asset_id: str, status: AssetStatus, error: str | None = None) -> bool:
        stmt = (
            update(MediaAsset)
            .where(MediaAsset.id == asset_id)
            .values(status=status, error=error, updated_at=_utcnow())
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt.execution_options(synchronize_session=False))
            await session.commit()
        return result.rowcount > 0

    async def claim(self, asset_id: str, *, lease_s: int = 0) -> AssetRecord | None:
        """Move the asset into ``processing`` unless another attempt holds it.

        A claim older than ``lease_s`` seconds counts as abandoned. Returns the
        claimed snapshot, or ``None`` when the asset is missing or busy.
        """
        now = _utcnow()
        available = MediaAsset.status != AssetStatus.processing
        if lease_s > 0:
            available = or_(available, MediaAsset.processing_started_at < now - timedelta(seconds=lease_s))
        stmt = (
            update(MediaAsset)
            .where(MediaAsset.id == asset_id, available)
            .values(status=AssetStatus.processing, error=None, processing_started_at=now, updated_at=now)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt.execution_options(synchronize_session=False))
            await session.commit()
        if result.rowcount == 0:
            return None
        return await self.load(asset_id)

    async def release(self, previous: AssetRecord) -> bool:
        """Hand a claimed asset back in the state it had before the claim."""
        stmt = (
            update(MediaAsset)
            .where(MediaAsset.id == previous.id, MediaAsset.status == AssetStatus.processing)
            .values(
                status=previous.status,
                error=previous.error,
                processing_started_at=previous.processing_started_at,
                updated_at=_utcnow(),
            )
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt.execution_options(synchronize_session=False))
            await session.commit()
        return result.rowcount > 0

    async def delete(self, asset_id: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(delete(MediaAsset).where(MediaAsset.id == asset_id))
            await session.commit()
        return result.rowcount > 0


__all__ = ["AssetRecord", "AssetRecordStore"]
