"""
Chunked, resumable ingestion jobs.

JobService.process_chunk(job_id, max_duration_ms) does a bounded slice of work
and returns True once the job is terminal. Every call reloads the job row, so
consecutive calls may be served by different workers.

Large-ingestion families (epg_import, playlist_sync):
    pending -> downloading -> parsing -> importing -> completed
Light family (mapping_import):
    pending -> processing -> completed
Any non-terminal status may move to failed.

The fetch runs at most once per job: its deduplicated output is cached on the
job (inline JSON or an on-disk artifact) and a reconciliation plan is stored
with it, so later calls only apply batches.
"""
import json
import logging
import os
import re
import socket
import time
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import progress as prog
from config import IngestSettings, get_settings
from database import get_session
from entity_store import ChannelStore, EntityStore, LineupStore
from errors import IngestError, MalformedSource, NotFoundError, PersistenceError
from job_store import (
    JobStatus,
    JobStore,
    JobType,
    is_terminal,
    job_types_for_target,
    load_artifact,
    remove_artifact_file,
    save_artifact,
)
from models import Category, Channel, ChannelLineup, EpgFile, IngestJob, Playlist
from providers import get_provider_source
from reconciliation import (
    CHANNEL_SPEC,
    LINEUP_SPEC,
    ReconcileMode,
    ReconcilePlan,
    build_rows,
    dedupe_entities,
    reconcile,
)
from stream_ingestor import StreamIngestor

logger = logging.getLogger(__name__)

LOG_TAGS = {
    JobType.EPG_IMPORT.value: "[EPG-JOB]",
    JobType.PLAYLIST_SYNC.value: "[SYNC-JOB]",
    JobType.MAPPING_IMPORT.value: "[MAPPING-JOB]",
}

FETCH_STATUSES = (JobStatus.PENDING.value, JobStatus.DOWNLOADING.value, JobStatus.PARSING.value)

# M3U attribute names accepted as identifier metadata keys
METADATA_KEYS = {
    "tvg-id": "tvg_id",
    "tvg-name": "tvg_name",
    "tvg-logo": "tvg_logo",
    "group-title": "group_title",
    "tvg-chno": "tvg_chno",
    "catchup": "catchup",
    "catchup-days": "catchup_days",
}


class LeaseLost(Exception):
    """The fetch lease expired and was taken over by another worker."""


def _worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def extract_identifier(channel: Channel, playlist: Playlist, pattern: Optional[re.Pattern] = None) -> str:
    """Identifier used to match uploaded mappings against a stored channel.

    Falls back to the stream id whenever the configured extraction yields nothing.
    """
    source = playlist.identifier_source or "channel-name"
    if source == "stream-url" and pattern is not None and channel.stream_url:
        value = channel.stream_url
    elif source == "metadata" and playlist.identifier_metadata_key:
        key = playlist.identifier_metadata_key.lower()
        attr = METADATA_KEYS.get(key, key.replace("-", "_"))
        return getattr(channel, attr, None) or channel.stream_id
    elif source == "channel-name" and pattern is not None and channel.name:
        value = channel.name
    else:
        return channel.stream_id

    match = pattern.search(value)
    if not match:
        return channel.stream_id
    if match.groups() and match.group(1):
        return match.group(1)
    return match.group(0)


class JobService:
    """Creates, reports on and advances ingestion jobs."""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        settings: Optional[IngestSettings] = None,
        ingestor: Optional[StreamIngestor] = None,
        source_factory: Optional[Callable] = None,
        clock: Optional[Callable[[], float]] = None,
        worker_id: Optional[str] = None,
    ):
        self._session_factory = session_factory
        self.settings = settings or get_settings()
        self.ingestor = ingestor or StreamIngestor(self.settings)
        self.source_factory = source_factory or get_provider_source
        self.clock = clock or time.monotonic
        self.worker_id = worker_id or _worker_id()

    def _session(self) -> Session:
        if self._session_factory is not None:
            return self._session_factory()
        return get_session()

    # -----------------------------------------------------------------------
    # Creation & status
    # -----------------------------------------------------------------------

    def create_job(
        self,
        job_type: str,
        owner_id: int,
        target_id: int,
        source_url: Optional[str] = None,
        options: Optional[dict] = None,
    ) -> int:
        """Create a job and return its id.

        Raises NotFoundError if the target does not belong to the owner and
        ConflictError if the target already has a non-terminal job.
        """
        job_type = JobType(job_type).value
        db = self._session()
        try:
            if job_type == JobType.EPG_IMPORT.value:
                target = db.query(EpgFile).filter(EpgFile.id == target_id, EpgFile.owner_id == owner_id).first()
                if target is None:
                    raise NotFoundError(f"EPG file {target_id} not found")
                source_url = source_url or target.url
            else:
                target = db.query(Playlist).filter(Playlist.id == target_id, Playlist.owner_id == owner_id).first()
                if target is None:
                    raise NotFoundError(f"Playlist {target_id} not found")
                source_url = source_url or target.url

            job = JobStore(db).create_job(job_type, owner_id, target_id, source_url, options)
            return job.id
        finally:
            db.close()

    def create_epg_import_job(self, owner_id: int, epg_file_id: int, source_url: Optional[str] = None) -> int:
        return self.create_job(JobType.EPG_IMPORT.value, owner_id, epg_file_id, source_url)

    def create_playlist_sync_job(
        self, owner_id: int, playlist_id: int, category_filters: Optional[list[str]] = None
    ) -> int:
        options = {"category_filters": category_filters} if category_filters else None
        return self.create_job(JobType.PLAYLIST_SYNC.value, owner_id, playlist_id, options=options)

    def create_mapping_import_job(
        self,
        owner_id: int,
        playlist_id: int,
        mappings: list[dict],
        epg_file_id: Optional[int] = None,
    ) -> int:
        options = {"mappings": mappings}
        if epg_file_id is not None:
            options["epg_file_id"] = epg_file_id
        return self.create_job(JobType.MAPPING_IMPORT.value, owner_id, playlist_id, options=options)

    def get_job_status(self, job_id: int) -> dict:
        db = self._session()
        try:
            return JobStore(db).load_job(job_id).to_dict()
        finally:
            db.close()

    # -----------------------------------------------------------------------
    # Chunk processing
    # -----------------------------------------------------------------------

    async def process_chunk(self, job_id: int, max_duration_ms: Optional[int] = None) -> bool:
        """Advance the job by at most ``max_duration_ms``; True once it is terminal.

        Unrecoverable errors fail the job and return True. Persistence errors
        abort the chunk and return False; the next call resumes from the last
        checkpoint, until the retry cap fails the job.
        """
        budget_ms = max_duration_ms if max_duration_ms is not None else self.settings.default_budget_ms
        deadline = self.clock() + budget_ms / 1000.0

        db = self._session()
        store = JobStore(db)
        try:
            job = store.load_job(job_id)
            if is_terminal(job.status):
                return True
            tag = LOG_TAGS.get(job.job_type, "[JOBS]")

            try:
                if job.job_type == JobType.MAPPING_IMPORT.value:
                    return self._process_mapping(db, store, job, deadline)
                return await self._process_ingest(db, store, job, deadline)
            except (PersistenceError, SQLAlchemyError) as e:
                db.rollback()
                return self._record_persistence_failure(store, job_id, e)
            except IngestError as e:
                logger.error("%s Job %s failed: %s", tag, job_id, e)
                self._fail(store, job_id, e.user_message)
                return True
            except Exception as e:
                logger.exception("%s Unexpected error processing job %s: %s", tag, job_id, e)
                db.rollback()
                self._fail(store, job_id, f"Unexpected error: {e}")
                return True
        finally:
            db.close()

    def _remaining(self, deadline: float) -> float:
        return deadline - self.clock()

    def _fail(self, store: JobStore, job_id: int, error: str) -> None:
        job = store.fail_job(job_id, error)
        if job.artifact_data is not None or job.artifact_path or job.plan_data:
            remove_artifact_file(job.artifact_path)
            store.update_job(job_id, artifact_data=None, artifact_path=None, plan_data=None)

    def _record_persistence_failure(self, store: JobStore, job_id: int, error: Exception) -> bool:
        try:
            job = store.load_job(job_id)
            retries = (job.retry_count or 0) + 1
            if retries >= self.settings.max_persistence_retries:
                self._fail(store, job_id, f"Database error after {retries} attempts: {error}")
                return True
            store.update_job(job_id, retry_count=retries, message=f"Database error, will retry: {error}")
            logger.warning("[JOBS] Persistence error on job %s (attempt %d): %s", job_id, retries, error)
        except (PersistenceError, SQLAlchemyError) as e:
            logger.error("[JOBS] Could not record persistence failure on job %s: %s", job_id, e)
        return False

    # -- large-ingestion families -------------------------------------------

    async def _process_ingest(self, db: Session, store: JobStore, job: IngestJob, deadline: float) -> bool:
        fetched_now = False
        if job.status in FETCH_STATUSES:
            if not await self._fetch_phase(db, store, job):
                return False
            job = store.load_job(job.id)
            fetched_now = True

        records = load_artifact(job)
        if records is None:
            raise IngestError("Cached data for this job is missing; start a new import")

        if job.job_type == JobType.EPG_IMPORT.value:
            entity_store = LineupStore(db, job.owner_id, job.target_id)
            spec = LINEUP_SPEC
            batch_size = self.settings.lineup_batch_size
        else:
            entity_store = ChannelStore(db, job.target_id)
            spec = CHANNEL_SPEC
            batch_size = self.settings.channel_batch_size

        if job.plan_data:
            plan = ReconcilePlan.from_dict(json.loads(job.plan_data))
        else:
            plan = self._build_plan(store, job, entity_store, records, spec.key_field)
            job = store.load_job(job.id)

        return self._apply_batches(store, job, entity_store, records, plan, batch_size, deadline, fetched_now)

    def _build_plan(
        self, store: JobStore, job: IngestJob, entity_store: EntityStore, records: list[dict], key_field: str
    ) -> ReconcilePlan:
        partial = job.job_type == JobType.PLAYLIST_SYNC.value and bool(job.get_options().get("category_filters"))
        mode = ReconcileMode.PARTIAL if partial else ReconcileMode.FULL
        plan = reconcile(entity_store.list_keys_with_state(), [r[key_field] for r in records], mode)
        store.update_job(
            job.id,
            plan_data=json.dumps(plan.to_dict()),
            total_items=len(records) + len(plan.to_delete),
            processed_items=0,
        )
        logger.info(
            "%s Job %s plan (%s): %d new, %d existing, %d to delete, %d with preserved user data",
            LOG_TAGS[job.job_type], job.id, mode.value, len(plan.to_insert),
            len(plan.to_update), len(plan.to_delete), len(plan.preserved),
        )
        return plan

    def _apply_batches(
        self,
        store: JobStore,
        job: IngestJob,
        entity_store: EntityStore,
        records: list[dict],
        plan: ReconcilePlan,
        batch_size: int,
        deadline: float,
        worked: bool,
    ) -> bool:
        tag = LOG_TAGS[job.job_type]
        spec = entity_store.spec
        margin = self.settings.safety_margin_ms / 1000.0
        inserts = set(plan.to_insert)
        record_count = len(records)
        total = job.total_items
        processed = job.processed_items or 0
        current = job.progress or 0

        while processed < total:
            # At least one batch per call, so tiny budgets still make progress
            if worked and self._remaining(deadline) < margin:
                logger.info(
                    "%s Job %s paused at %d/%d (%.0fms left in budget)",
                    tag, job.id, processed, total, self._remaining(deadline) * 1000,
                )
                return False

            if processed < record_count:
                end = min(processed + batch_size, record_count)
                rows = build_rows(records[processed:end], processed, plan, spec, inserts)
                entity_store.upsert_many(rows)
            else:
                start = processed - record_count
                stop = min(start + batch_size, len(plan.to_delete))
                entity_store.delete_many(plan.to_delete[start:stop])
                end = record_count + stop

            processed = end
            worked = True
            current = prog.advance(current, prog.import_progress(processed, total))
            store.update_job(
                job.id,
                processed_items=processed,
                progress=current,
                retry_count=0,
                message=prog.status_message("importing", min(processed, record_count), record_count),
            )

        self._complete_ingest(store, job, entity_store, record_count)
        return True

    def _complete_ingest(self, store: JobStore, job: IngestJob, entity_store: EntityStore, record_count: int) -> None:
        now = datetime.utcnow()
        db = store.db
        try:
            if job.job_type == JobType.EPG_IMPORT.value:
                epg_file = db.get(EpgFile, job.target_id)
                if epg_file is not None:
                    epg_file.channel_count = entity_store.count()
                    epg_file.last_synced_at = now
            else:
                playlist = db.get(Playlist, job.target_id)
                if playlist is not None:
                    playlist.last_synced_at = now
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Failed to update target after job {job.id}: {e}") from e

        artifact_path = job.artifact_path
        store.update_job(
            job.id,
            status=JobStatus.COMPLETED.value,
            progress=prog.COMPLETE,
            processed_items=job.total_items,
            message=prog.status_message("completed", record_count, record_count),
            artifact_data=None,
            artifact_path=None,
            plan_data=None,
        )
        remove_artifact_file(artifact_path)
        logger.info("%s Job %s completed: %d records", LOG_TAGS[job.job_type], job.id, record_count)

    async def _fetch_phase(self, db: Session, store: JobStore, job: IngestJob) -> bool:
        """Fetch, parse and cache the source. False if another worker holds the lease."""
        tag = LOG_TAGS[job.job_type]
        if not store.claim_lease(job.id, self.worker_id, self.settings.fetch_lease_seconds):
            logger.info("%s Job %s is already being fetched by another worker", tag, job.id)
            return False

        try:
            fields = {"progress": prog.advance(job.progress, prog.FETCH_START), "message": "Downloading..."}
            if job.status == JobStatus.PENDING.value:
                fields["status"] = JobStatus.DOWNLOADING.value
            store.update_job(job.id, **fields)

            if job.job_type == JobType.EPG_IMPORT.value:
                records, extra = await self._fetch_epg(store, job)
            else:
                records, extra = await self._fetch_playlist(db, store, job)

            self._keep_lease(store, job.id)
            job = store.load_job(job.id)
            store.update_job(
                job.id,
                status=JobStatus.PARSING.value,
                progress=prog.advance(job.progress, prog.PARSED),
                message=prog.status_message("parsing", total=len(records)),
                **extra,
            )
            artifact = save_artifact(job, records, self.settings.inline_artifact_max_bytes)
            store.update_job(
                job.id,
                status=JobStatus.IMPORTING.value,
                progress=prog.advance(job.progress, prog.IMPORT_START),
                total_items=len(records),
                processed_items=0,
                plan_data=None,
                message=prog.status_message("importing", 0, len(records)),
                **artifact,
            )
            logger.info("%s Job %s cached %d records for import", tag, job.id, len(records))
            return True
        except LeaseLost:
            logger.warning("%s Job %s: fetch lease was taken over, discarding this download", tag, job.id)
            return False
        finally:
            try:
                store.release_lease(job.id, self.worker_id)
            except PersistenceError as e:
                logger.warning("%s Could not release lease on job %s: %s", tag, job.id, e)

    def _keep_lease(self, store: JobStore, job_id: int) -> None:
        """Extend the fetch lease; raises LeaseLost if another worker has taken it."""
        if not store.renew_lease(job_id, self.worker_id, self.settings.fetch_lease_seconds):
            raise LeaseLost(f"Job {job_id} lease is held by another worker")

    def _download_progress(self, store: JobStore, job: IngestJob):
        throttle = self.settings.progress_throttle_ms / 1000.0
        estimate = self.settings.unknown_size_estimate_bytes
        state = {"last": None, "progress": job.progress or 0}

        def on_progress(bytes_read: int, total_bytes: Optional[int]) -> None:
            now = self.clock()
            if state["last"] is not None and now - state["last"] < throttle:
                return
            state["last"] = now
            state["progress"] = prog.advance(state["progress"], prog.fetch_progress(bytes_read, total_bytes, estimate))
            try:
                # Aborts the download once another worker owns the fetch
                self._keep_lease(store, job.id)
                store.update_job(
                    job.id,
                    progress=state["progress"],
                    bytes_read=bytes_read,
                    total_bytes=total_bytes,
                    message=prog.status_message("downloading", bytes_read=bytes_read),
                )
            except PersistenceError as e:
                logger.warning("[JOBS] Skipped progress update for job %s: %s", job.id, e)

        return on_progress

    async def _fetch_epg(self, store: JobStore, job: IngestJob) -> tuple[list[dict], dict]:
        result = await self.ingestor.ingest_channels(job.source_url, progress=self._download_progress(store, job))
        channels, dropped = dedupe_entities(result.channels, key=lambda c: c.key)
        if dropped:
            logger.info("[EPG-JOB] Job %s dropped %d duplicate channels", job.id, dropped)
        if not channels:
            raise MalformedSource("No channels found in EPG file")

        records = [{"lineup_key": c.key, **c.to_dict()} for c in channels]
        extra = {}
        if result.fetch is not None:
            extra = {"bytes_read": result.fetch.bytes_read, "total_bytes": result.fetch.total_bytes}
        return records, extra

    async def _fetch_playlist(self, db: Session, store: JobStore, job: IngestJob) -> tuple[list[dict], dict]:
        playlist = db.get(Playlist, job.target_id)
        if playlist is None:
            raise NotFoundError(f"Playlist {job.target_id} not found")
        filters = job.get_options().get("category_filters") or None

        source = self.source_factory(playlist, filters, self.settings)
        snapshot = await source.fetch()
        channels, dropped = dedupe_entities(snapshot.channels, key=lambda c: c.get("stream_id"))
        if dropped:
            logger.info("[SYNC-JOB] Job %s dropped %d duplicate streams", job.id, dropped)
        if not channels:
            logger.warning("[SYNC-JOB] Job %s: provider returned no channels", job.id)

        self._keep_lease(store, job.id)
        self._sync_categories(db, playlist.id, snapshot.categories, partial=bool(filters))
        return channels, {}

    def _sync_categories(self, db: Session, playlist_id: int, categories: list[dict], partial: bool) -> None:
        """Upsert provider categories; a full sync also removes categories no longer offered."""
        try:
            if categories:
                stmt = sqlite_insert(Category.__table__)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["playlist_id", "category_id"],
                    set_={"name": stmt.excluded.name},
                )
                db.execute(stmt, [{"playlist_id": playlist_id, **c} for c in categories])
            if not partial:
                keep = [c["category_id"] for c in categories]
                db.query(Category).filter(
                    Category.playlist_id == playlist_id,
                    Category.category_id.notin_(keep),
                ).delete(synchronize_session=False)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Failed to save categories for playlist {playlist_id}: {e}") from e

    # -- mapping import -----------------------------------------------------

    def _process_mapping(self, db: Session, store: JobStore, job: IngestJob, deadline: float) -> bool:
        worked = False
        if job.status == JobStatus.PENDING.value:
            job = store.update_job(
                job.id,
                status=JobStatus.PROCESSING.value,
                progress=prog.advance(job.progress, prog.MAPPING_START),
                message="Preparing mappings...",
            )

        if job.plan_data is None:
            updates, not_found = self._prepare_mappings(db, job)
            job = store.update_job(
                job.id,
                plan_data=json.dumps({"updates": updates}),
                total_items=len(updates),
                not_found_items=not_found,
                processed_items=0,
                progress=prog.advance(job.progress, prog.MAPPING_PREPARED),
                message=f"Matched {len(updates):,} channels ({not_found:,} not found)",
            )
            worked = True
            logger.info("[MAPPING-JOB] Job %s matched %d channels, %d not found", job.id, len(updates), not_found)

        updates = json.loads(job.plan_data)["updates"]
        channel_store = ChannelStore(db, job.target_id)
        margin = self.settings.safety_margin_ms / 1000.0
        batch_size = self.settings.mapping_batch_size
        total = len(updates)
        processed = job.processed_items or 0
        current = job.progress or 0

        while processed < total:
            if worked and self._remaining(deadline) < margin:
                return False
            end = min(processed + batch_size, total)
            channel_store.update_each({sid: {"channel_mapping": m} for sid, m in updates[processed:end]})
            processed = end
            worked = True
            current = prog.advance(current, prog.mapping_progress(processed, total))
            store.update_job(
                job.id,
                processed_items=processed,
                progress=current,
                retry_count=0,
                message=prog.status_message("processing", processed, total, noun="mappings"),
            )

        store.update_job(
            job.id,
            status=JobStatus.COMPLETED.value,
            progress=prog.COMPLETE,
            plan_data=None,
            message=f"Imported {total:,} mappings ({job.not_found_items:,} not found)",
        )
        logger.info("[MAPPING-JOB] Job %s completed: %d mappings applied", job.id, total)
        return True

    def _prepare_mappings(self, db: Session, job: IngestJob) -> tuple[list[list[str]], int]:
        """Match uploaded mappings to stored channels; returns ([stream_id, mapping_json] pairs, not_found)."""
        playlist = db.get(Playlist, job.target_id)
        if playlist is None:
            raise NotFoundError(f"Playlist {job.target_id} not found")
        options = job.get_options()

        pattern = None
        if playlist.identifier_regex:
            try:
                pattern = re.compile(playlist.identifier_regex)
            except re.error as e:
                raise MalformedSource(f"Invalid identifier regex: {e}") from e

        channels = db.query(Channel).filter(Channel.playlist_id == playlist.id).all()
        by_identifier = {}
        by_stream_id = {}
        by_tvg_name = {}
        for channel in channels:
            by_identifier.setdefault(extract_identifier(channel, playlist, pattern), channel)
            by_stream_id[channel.stream_id] = channel
            if channel.tvg_name:
                by_tvg_name.setdefault(channel.tvg_name, channel)

        lineup = self._lineup_lookup(db, job.owner_id, options.get("epg_file_id"))

        updates: dict[str, str] = {}
        not_found = 0
        for item in options.get("mappings") or []:
            channel_id = item.get("channel_id")
            if channel_id is None or channel_id == "":
                continue
            channel_id = str(channel_id)
            tvg_name = item.get("tvg_name")
            match = (
                by_identifier.get(channel_id)
                or by_stream_id.get(channel_id)
                or (by_tvg_name.get(tvg_name) if tvg_name else None)
            )
            name = item.get("channel_name")
            if match is None or not name:
                not_found += 1
                continue
            entry = lineup.get(name.lower(), {})
            updates[match.stream_id] = json.dumps({
                "name": name,
                "logo": entry.get("logo") or "",
                "extGrp": entry.get("ext_grp") or "",
                "tvgId": entry.get("tvg_id") or "",
            })
        return [[sid, mapping] for sid, mapping in updates.items()], not_found

    def _lineup_lookup(self, db: Session, owner_id: int, epg_file_id: Optional[int]) -> dict[str, dict]:
        """Lineup entries by lowercase name, from the given, default, or all EPG files."""
        query = db.query(ChannelLineup).filter(ChannelLineup.owner_id == owner_id)
        if epg_file_id is None:
            default = db.query(EpgFile).filter(EpgFile.owner_id == owner_id, EpgFile.is_default.is_(True)).first()
            if default is not None:
                epg_file_id = default.id
        if epg_file_id is not None:
            query = query.filter(ChannelLineup.epg_file_id == epg_file_id)

        lookup = {}
        for row in query.order_by(ChannelLineup.sort_order):
            lookup.setdefault(row.name.lower(), {"logo": row.tvg_logo, "tvg_id": row.tvg_id, "ext_grp": row.ext_grp})
        return lookup

    # -----------------------------------------------------------------------
    # Cleanup
    # -----------------------------------------------------------------------

    def _cleanup_failed_jobs(self, db: Session, jobs: list[IngestJob]) -> None:
        for job in jobs:
            remove_artifact_file(job.artifact_path)
            job.artifact_data = None
            job.artifact_path = None
            job.plan_data = None
            if job.job_type == JobType.EPG_IMPORT.value:
                self._remove_orphaned_epg_file(db, job.target_id)
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Failed to clean up stale jobs: {e}") from e

    @staticmethod
    def _remove_orphaned_epg_file(db: Session, epg_file_id: int) -> None:
        """Delete an EPG file that never completed an import and has no lineup."""
        epg_file = db.get(EpgFile, epg_file_id)
        if epg_file is None or epg_file.channel_count or epg_file.last_synced_at is not None:
            return
        has_lineup = db.query(ChannelLineup.id).filter(ChannelLineup.epg_file_id == epg_file_id).first()
        if has_lineup is None:
            logger.info("[EPG-JOB] Removing orphaned EPG file %s (%s)", epg_file.id, epg_file.name)
            db.delete(epg_file)

    def cleanup_stuck_jobs(self, owner_id: int, target_id: int, job_type: Optional[str] = None) -> int:
        """Fail this target's jobs that have not been updated within the staleness window."""
        cutoff = datetime.utcnow() - timedelta(seconds=self.settings.stale_job_seconds)
        job_types = job_types_for_target(JobType(job_type).value) if job_type else None
        db = self._session()
        try:
            store = JobStore(db)
            jobs = store.mark_stale_jobs_failed(
                cutoff,
                self._stale_reason(),
                owner_id=owner_id,
                target_id=target_id,
                job_types=job_types,
            )
            self._cleanup_failed_jobs(db, jobs)
            return len(jobs)
        finally:
            db.close()

    def kill_stuck_jobs_on_startup(self) -> int:
        """Fail jobs left behind by a previous process that stopped updating them."""
        cutoff = datetime.utcnow() - timedelta(seconds=self.settings.stale_job_seconds)
        db = self._session()
        try:
            store = JobStore(db)
            jobs = store.mark_stale_jobs_failed(cutoff, "Job interrupted (server restarted)")
            self._cleanup_failed_jobs(db, jobs)
            if jobs:
                logger.info("[JOBS] Failed %d stuck jobs on startup", len(jobs))
            return len(jobs)
        finally:
            db.close()

    def sweep(self) -> dict:
        """Fail stale jobs and delete terminal jobs past the retention window."""
        now = datetime.utcnow()
        stale_cutoff = now - timedelta(seconds=self.settings.stale_job_seconds)
        retention_cutoff = now - timedelta(hours=self.settings.job_retention_hours)
        db = self._session()
        try:
            store = JobStore(db)
            stale = store.mark_stale_jobs_failed(stale_cutoff, self._stale_reason())
            self._cleanup_failed_jobs(db, stale)
            deleted = store.delete_expired_jobs(retention_cutoff)
            return {"failed": len(stale), "deleted": deleted}
        finally:
            db.close()

    def _stale_reason(self) -> str:
        minutes = self.settings.stale_job_seconds / 60
        return f"Job timed out (no progress for {minutes:g} minutes)"
