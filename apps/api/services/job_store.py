"""Persistence for generation jobs.

The orchestrator only needs create / get / update. ``update`` takes an
optional ``expected_status`` so a finalizing status check can refuse to
overwrite a job that another check already moved to a terminal state.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.future import select

from models.generation_job import GenerationJob

logger = logging.getLogger(__name__)

STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED})


@dataclass(frozen=True)
class JobRecord:
    id: str
    operation_name: Optional[str]
    status: str
    prompt: str
    source_image_ref: Optional[str] = None
    result_url: Optional[str] = None
    error_message: Optional[str] = None
    owner_id: Optional[str] = None
    admission_mode: Optional[str] = None
    duration_seconds: Optional[int] = None
    aspect_ratio: Optional[str] = None
    generate_audio: bool = True
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


_UPDATABLE_FIELDS = {
    "operation_name",
    "status",
    "result_url",
    "error_message",
    "source_image_ref",
    "completed_at",
}


def _check_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update job fields: {', '.join(sorted(unknown))}")
    status = fields.get("status")
    if status is not None and status not in TERMINAL_STATUSES | {STATUS_PROCESSING}:
        raise ValueError(f"Unknown job status: {status}")


class JobStore(ABC):
    @abstractmethod
    async def create(self, job: JobRecord) -> JobRecord:
        raise NotImplementedError

    @abstractmethod
    async def get_by_id(self, job_id: str) -> Optional[JobRecord]:
        raise NotImplementedError

    @abstractmethod
    async def update(
        self,
        job_id: str,
        *,
        expected_status: Optional[str] = None,
        **fields: Any,
    ) -> Optional[JobRecord]:
        """Apply ``fields``. Returns the stored record unchanged when ``expected_status`` does not match."""
        raise NotImplementedError

    @abstractmethod
    async def list_for_owner(self, owner_id: str, limit: int = 50) -> List[JobRecord]:
        raise NotImplementedError


def new_job_id() -> str:
    return str(uuid.uuid4())


def _record_from_row(row: GenerationJob) -> JobRecord:
    return JobRecord(
        id=row.id,
        operation_name=row.operation_name,
        status=row.status,
        prompt=row.prompt,
        source_image_ref=row.source_image_ref,
        result_url=row.result_url,
        error_message=row.error_message,
        owner_id=row.owner_id,
        admission_mode=row.admission_mode,
        duration_seconds=row.duration_seconds,
        aspect_ratio=row.aspect_ratio,
        generate_audio=bool(row.generate_audio),
        created_at=row.created_at,
        updated_at=row.updated_at,
        completed_at=row.completed_at,
    )


class SqlJobStore(JobStore):
    def __init__(self, session_maker: async_sessionmaker) -> None:
        self._session_maker = session_maker

    async def create(self, job: JobRecord) -> JobRecord:
        async with self._session_maker() as db:
            row = GenerationJob(
                id=job.id,
                operation_name=job.operation_name,
                status=job.status,
                prompt=job.prompt,
                source_image_ref=job.source_image_ref,
                result_url=job.result_url,
                error_message=job.error_message,
                owner_id=job.owner_id,
                admission_mode=job.admission_mode,
                duration_seconds=job.duration_seconds,
                aspect_ratio=job.aspect_ratio,
                generate_audio=job.generate_audio,
                created_at=job.created_at,
            )
            db.add(row)
            await db.commit()
            await db.refresh(row)
            return _record_from_row(row)

    async def get_by_id(self, job_id: str) -> Optional[JobRecord]:
        async with self._session_maker() as db:
            result = await db.execute(select(GenerationJob).where(GenerationJob.id == job_id))
            row = result.scalar_one_or_none()
            return _record_from_row(row) if row else None

    async def update(
        self,
        job_id: str,
        *,
        expected_status: Optional[str] = None,
        **fields: Any,
    ) -> Optional[JobRecord]:
        _check_fields(fields)
        async with self._session_maker() as db:
            result = await db.execute(
                select(GenerationJob).where(GenerationJob.id == job_id).with_for_update()
            )
            row = result.scalar_one_or_none()
            if not row:
                return None
            if expected_status is not None and row.status != expected_status:
                logger.info(
                    "Job %s is %s, not %s; leaving it unchanged", job_id, row.status, expected_status
                )
                return _record_from_row(row)
            for name, value in fields.items():
                if name == "error_message" and value is not None:
                    value = str(value)[:1000]
                setattr(row, name, value)
            await db.commit()
            await db.refresh(row)
            return _record_from_row(row)

    async def list_for_owner(self, owner_id: str, limit: int = 50) -> List[JobRecord]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(GenerationJob)
                .where(GenerationJob.owner_id == owner_id)
                .order_by(GenerationJob.created_at.desc())
                .limit(limit)
            )
            return [_record_from_row(row) for row in result.scalars().all()]


class InMemoryJobStore(JobStore):
    def __init__(self) -> None:
        self._jobs: Dict[str, JobRecord] = {}
        self._lock = asyncio.Lock()

    async def create(self, job: JobRecord) -> JobRecord:
        async with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job {job.id} already exists")
            self._jobs[job.id] = job
            return job

    async def get_by_id(self, job_id: str) -> Optional[JobRecord]:
        return self._jobs.get(job_id)

    async def update(
        self,
        job_id: str,
        *,
        expected_status: Optional[str] = None,
        **fields: Any,
    ) -> Optional[JobRecord]:
        _check_fields(fields)
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            if expected_status is not None and job.status != expected_status:
                return job
            updated = replace(job, updated_at=datetime.now(timezone.utc), **fields)
            self._jobs[job_id] = updated
            return updated

    async def list_for_owner(self, owner_id: str, limit: int = 50) -> List[JobRecord]:
        jobs = [job for job in self._jobs.values() if job.owner_id == owner_id]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return jobs[:limit]
