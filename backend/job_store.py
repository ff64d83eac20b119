"""
Persistence for ingestion jobs.

Every JobStore write commits on its own. Callers always reload a job before
acting on it; nothing here caches job state between calls.
"""
import json
import logging
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import ARTIFACT_DIR
from errors import ConflictError, InvalidTransitionError, NotFoundError, PersistenceError
from models import IngestJob

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Statuses & types
# ---------------------------------------------------------------------------

class JobStatus(str, Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    PARSING = "parsing"
    IMPORTING = "importing"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, Enum):
    EPG_IMPORT = "epg_import"
    PLAYLIST_SYNC = "playlist_sync"
    MAPPING_IMPORT = "mapping_import"


TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)
ACTIVE_STATUSES = tuple(s.value for s in JobStatus if s.value not in TERMINAL_STATUSES)

_ALLOWED_TRANSITIONS = {
    JobStatus.PENDING.value: {"downloading", "processing", "failed"},
    JobStatus.DOWNLOADING.value: {"parsing", "importing", "failed"},
    JobStatus.PARSING.value: {"importing", "failed"},
    JobStatus.IMPORTING.value: {"completed", "failed"},
    JobStatus.PROCESSING.value: {"completed", "failed"},
    JobStatus.COMPLETED.value: set(),
    JobStatus.FAILED.value: set(),
}

# Job types that write to the same target table conflict with each other
TARGET_KINDS = {
    JobType.EPG_IMPORT.value: "epg_file",
    JobType.PLAYLIST_SYNC.value: "playlist",
    JobType.MAPPING_IMPORT.value: "playlist",
}


def job_types_for_target(job_type: str) -> list[str]:
    kind = TARGET_KINDS[job_type]
    return [t for t, k in TARGET_KINDS.items() if k == kind]


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def check_transition(current: str, new: str) -> None:
    """Raise InvalidTransitionError unless ``current`` may move to ``new``."""
    if current == new:
        return
    if new not in _ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"Cannot move job from '{current}' to '{new}'")


# ---------------------------------------------------------------------------
# JobStore
# ---------------------------------------------------------------------------

class JobStore:
    """CRUD, leasing and sweeping for IngestJob rows."""

    def __init__(self, db: Session):
        self.db = db

    def _commit(self, action: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to {action}: {e}") from e

    def find_active_job(self, owner_id: int, target_id: int, job_types: Iterable[str]) -> Optional[IngestJob]:
        return (
            self.db.query(IngestJob)
            .filter(
                IngestJob.owner_id == owner_id,
                IngestJob.target_id == target_id,
                IngestJob.job_type.in_(list(job_types)),
                IngestJob.status.in_(ACTIVE_STATUSES),
            )
            .order_by(IngestJob.created_at.desc())
            .first()
        )

    def create_job(
        self,
        job_type: str,
        owner_id: int,
        target_id: int,
        source_url: Optional[str] = None,
        options: Optional[dict] = None,
    ) -> IngestJob:
        """Create a pending job; ConflictError if the target already has an active one."""
        job_type = JobType(job_type).value
        active = self.find_active_job(owner_id, target_id, job_types_for_target(job_type))
        if active is not None:
            raise ConflictError(
                f"A {active.job_type} job (id={active.id}) is already {active.status} "
                f"for target {target_id}"
            )

        now = datetime.utcnow()
        job = IngestJob(
            job_type=job_type,
            owner_id=owner_id,
            target_id=target_id,
            source_url=source_url,
            status=JobStatus.PENDING.value,
            progress=0,
            message="Waiting to start...",
            options=json.dumps(options) if options else None,
            created_at=now,
            updated_at=now,
        )
        self.db.add(job)
        self._commit("create job")
        self.db.refresh(job)
        logger.info("[JOBS] Created %s job %s for owner=%s target=%s", job_type, job.id, owner_id, target_id)
        return job

    def load_job(self, job_id: int) -> IngestJob:
        """Load the job from the database, discarding any identity-map copy."""
        job = (
            self.db.query(IngestJob)
            .populate_existing()
            .filter(IngestJob.id == job_id)
            .first()
        )
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    def update_job(self, job_id: int, **fields) -> IngestJob:
        """Apply ``fields`` to the job and commit. Status changes are validated."""
        job = self.load_job(job_id)
        if "status" in fields:
            check_transition(job.status, fields["status"])
            if fields["status"] in TERMINAL_STATUSES and "completed_at" not in fields:
                fields["completed_at"] = datetime.utcnow()
        for name, value in fields.items():
            setattr(job, name, value)
        job.updated_at = datetime.utcnow()
        self._commit(f"update job {job_id}")
        return job

    def fail_job(self, job_id: int, error: str) -> IngestJob:
        job = self.load_job(job_id)
        if is_terminal(job.status):
            return job
        logger.error("[JOBS] Job %s failed: %s", job_id, error)
        return self.update_job(
            job_id,
            status=JobStatus.FAILED.value,
            error=error,
            message="Failed",
            lease_owner=None,
            lease_expires_at=None,
        )

    # -- fetch lease --------------------------------------------------------

    def claim_lease(self, job_id: int, owner: str, lease_seconds: int) -> bool:
        """Claim the fetch lease unless another worker holds an unexpired one."""
        now = datetime.utcnow()
        stmt = (
            update(IngestJob)
            .where(
                IngestJob.id == job_id,
                or_(
                    IngestJob.lease_owner.is_(None),
                    IngestJob.lease_owner == owner,
                    IngestJob.lease_expires_at.is_(None),
                    IngestJob.lease_expires_at < now,
                ),
            )
            .values(
                lease_owner=owner,
                lease_expires_at=now + timedelta(seconds=lease_seconds),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            claimed = self.db.execute(stmt).rowcount == 1
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to claim lease on job {job_id}: {e}") from e
        self._commit(f"claim lease on job {job_id}")
        return claimed

    def renew_lease(self, job_id: int, owner: str, lease_seconds: int) -> bool:
        """Push back the expiry of a lease ``owner`` still holds; False once it is lost."""
        now = datetime.utcnow()
        stmt = (
            update(IngestJob)
            .where(IngestJob.id == job_id, IngestJob.lease_owner == owner)
            .values(lease_expires_at=now + timedelta(seconds=lease_seconds))
            .execution_options(synchronize_session=False)
        )
        try:
            renewed = self.db.execute(stmt).rowcount == 1
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to renew lease on job {job_id}: {e}") from e
        self._commit(f"renew lease on job {job_id}")
        return renewed

    def release_lease(self, job_id: int, owner: str) -> None:
        stmt = (
            update(IngestJob)
            .where(IngestJob.id == job_id, IngestJob.lease_owner == owner)
            .values(lease_owner=None, lease_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        try:
            self.db.execute(stmt)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to release lease on job {job_id}: {e}") from e
        self._commit(f"release lease on job {job_id}")

    # -- sweeping -----------------------------------------------------------

    def find_stale_jobs(
        self,
        cutoff: datetime,
        owner_id: Optional[int] = None,
        target_id: Optional[int] = None,
        job_types: Optional[Iterable[str]] = None,
    ) -> list[IngestJob]:
        query = self.db.query(IngestJob).filter(
            IngestJob.status.in_(ACTIVE_STATUSES),
            IngestJob.updated_at < cutoff,
        )
        if owner_id is not None:
            query = query.filter(IngestJob.owner_id == owner_id)
        if target_id is not None:
            query = query.filter(IngestJob.target_id == target_id)
        if job_types is not None:
            query = query.filter(IngestJob.job_type.in_(list(job_types)))
        return query.all()

    def mark_stale_jobs_failed(self, cutoff: datetime, reason: str, **filters) -> list[IngestJob]:
        """Fail every active job not updated since ``cutoff``; returns them."""
        jobs = self.find_stale_jobs(cutoff, **filters)
        now = datetime.utcnow()
        for job in jobs:
            logger.warning("[JOBS] Marking stale %s job %s (%s) as failed", job.job_type, job.id, job.status)
            job.status = JobStatus.FAILED.value
            job.error = reason
            job.message = "Failed"
            job.lease_owner = None
            job.lease_expires_at = None
            job.completed_at = now
            job.updated_at = now
        if jobs:
            self._commit("fail stale jobs")
        return jobs

    def delete_expired_jobs(self, cutoff: datetime) -> int:
        """Delete terminal jobs last updated before ``cutoff``, with their artifacts."""
        jobs = (
            self.db.query(IngestJob)
            .filter(IngestJob.status.in_(TERMINAL_STATUSES), IngestJob.updated_at < cutoff)
            .all()
        )
        for job in jobs:
            remove_artifact_file(job.artifact_path)
            self.db.delete(job)
        if jobs:
            self._commit("delete expired jobs")
        return len(jobs)


# ---------------------------------------------------------------------------
# Cached artifacts
# ---------------------------------------------------------------------------

def save_artifact(job: IngestJob, records: list[dict], inline_max_bytes: int, directory: Path = None) -> dict:
    """Serialize ``records`` for resumption; returns the job fields to store.

    Small artifacts are stored inline as JSON; larger ones go to a JSON-lines
    file under the artifact directory and only the path is stored.
    """
    payload = json.dumps(records, separators=(",", ":"))
    if len(payload) <= inline_max_bytes:
        return {"artifact_data": payload, "artifact_path": None}

    directory = directory or ARTIFACT_DIR
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"job-{job.id}.jsonl"
    with open(path, "w", encoding="utf-8") as f:
        for record in records:
            f.write(json.dumps(record, separators=(",", ":")))
            f.write("\n")
    logger.debug("[JOBS] Wrote %d records for job %s to %s", len(records), job.id, path)
    return {"artifact_data": None, "artifact_path": str(path)}


def load_artifact(job: IngestJob) -> Optional[list[dict]]:
    """Return the cached records, or None if the job has none (or the file is gone)."""
    if job.artifact_data is not None:
        return json.loads(job.artifact_data)
    if job.artifact_path:
        path = Path(job.artifact_path)
        if not path.exists():
            logger.warning("[JOBS] Artifact %s for job %s is missing", path, job.id)
            return None
        with open(path, encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]
    return None


def remove_artifact_file(path: Optional[str]) -> None:
    if not path:
        return
    try:
        Path(path).unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("[JOBS] Could not remove artifact %s: %s", path, e)
