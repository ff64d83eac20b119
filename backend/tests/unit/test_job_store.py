"""
Unit tests for job persistence: conflicts, transitions, leases, sweeping
and cached artifacts.
"""
import json
from datetime import datetime, timedelta

import pytest

from errors import ConflictError, InvalidTransitionError, NotFoundError
from job_store import (
    JobStatus,
    JobStore,
    check_transition,
    job_types_for_target,
    load_artifact,
    remove_artifact_file,
    save_artifact,
)
from models import IngestJob
from tests.fixtures.factories import create_job


class TestTransitions:
    """Tests for the job status state machine."""

    @pytest.mark.parametrize("current,new", [
        ("pending", "downloading"),
        ("downloading", "parsing"),
        ("parsing", "importing"),
        ("importing", "completed"),
        ("pending", "processing"),
        ("processing", "completed"),
        ("importing", "failed"),
        ("importing", "importing"),
    ])
    def test_allowed(self, current, new):
        check_transition(current, new)

    @pytest.mark.parametrize("current,new", [
        ("completed", "importing"),
        ("failed", "pending"),
        ("pending", "completed"),
        ("importing", "downloading"),
        ("processing", "importing"),
    ])
    def test_rejected(self, current, new):
        with pytest.raises(InvalidTransitionError):
            check_transition(current, new)

    def test_playlist_job_types_share_a_target(self):
        assert set(job_types_for_target("mapping_import")) == {"playlist_sync", "mapping_import"}
        assert job_types_for_target("epg_import") == ["epg_import"]


class TestCreateJob:
    """Tests for JobStore.create_job()."""

    def test_creates_pending_job(self, test_session):
        job = JobStore(test_session).create_job("epg_import", 1, 5, "http://epg.test/a.xml")
        assert job.status == "pending"
        assert job.progress == 0
        assert job.source_url == "http://epg.test/a.xml"

    def test_options_stored_as_json(self, test_session):
        job = JobStore(test_session).create_job("playlist_sync", 1, 5, options={"category_filters": ["3"]})
        assert job.get_options() == {"category_filters": ["3"]}

    def test_conflict_while_active(self, test_session):
        store = JobStore(test_session)
        store.create_job("epg_import", 1, 5)
        with pytest.raises(ConflictError):
            store.create_job("epg_import", 1, 5)

    def test_conflict_across_playlist_job_types(self, test_session):
        """A mapping import cannot start while the same playlist is syncing."""
        store = JobStore(test_session)
        store.create_job("playlist_sync", 1, 5)
        with pytest.raises(ConflictError, match="playlist_sync"):
            store.create_job("mapping_import", 1, 5)

    def test_terminal_job_does_not_conflict(self, test_session):
        create_job(test_session, "epg_import", target_id=5, status="failed")
        create_job(test_session, "epg_import", target_id=5, status="completed")
        job = JobStore(test_session).create_job("epg_import", 1, 5)
        assert job.status == "pending"

    def test_other_targets_and_owners_do_not_conflict(self, test_session):
        store = JobStore(test_session)
        store.create_job("epg_import", 1, 5)
        store.create_job("epg_import", 1, 6)
        store.create_job("epg_import", 2, 5)
        assert test_session.query(IngestJob).count() == 3

    def test_unknown_job_type(self, test_session):
        with pytest.raises(ValueError):
            JobStore(test_session).create_job("bogus", 1, 5)


class TestUpdateJob:
    def test_load_missing_job(self, test_session):
        with pytest.raises(NotFoundError):
            JobStore(test_session).load_job(999)

    def test_terminal_status_sets_completed_at(self, test_session):
        job = create_job(test_session, status="importing")
        updated = JobStore(test_session).update_job(job.id, status="completed", progress=100)
        assert updated.completed_at is not None
        assert updated.progress == 100

    def test_invalid_transition_rejected(self, test_session):
        job = create_job(test_session, status="completed")
        with pytest.raises(InvalidTransitionError):
            JobStore(test_session).update_job(job.id, status="importing")

    def test_fail_job_clears_lease(self, test_session):
        job = create_job(test_session, status="downloading", lease_owner="w1")
        failed = JobStore(test_session).fail_job(job.id, "boom")
        assert failed.status == "failed"
        assert failed.error == "boom"
        assert failed.lease_owner is None

    def test_fail_job_leaves_terminal_job_alone(self, test_session):
        job = create_job(test_session, status="completed")
        assert JobStore(test_session).fail_job(job.id, "late").error is None


class TestLease:
    """Tests for the fetch lease."""

    def test_first_claim_wins(self, test_session):
        job = create_job(test_session)
        store = JobStore(test_session)
        assert store.claim_lease(job.id, "worker-a", 60) is True
        assert store.claim_lease(job.id, "worker-b", 60) is False

    def test_owner_can_reclaim(self, test_session):
        job = create_job(test_session)
        store = JobStore(test_session)
        store.claim_lease(job.id, "worker-a", 60)
        assert store.claim_lease(job.id, "worker-a", 60) is True

    def test_expired_lease_can_be_taken(self, test_session):
        job = create_job(
            test_session,
            lease_owner="worker-a",
            lease_expires_at=datetime.utcnow() - timedelta(seconds=1),
        )
        assert JobStore(test_session).claim_lease(job.id, "worker-b", 60) is True

    def test_release_lets_another_worker_claim(self, test_session):
        job = create_job(test_session)
        store = JobStore(test_session)
        store.claim_lease(job.id, "worker-a", 60)
        store.release_lease(job.id, "worker-a")
        assert store.claim_lease(job.id, "worker-b", 60) is True

    def test_owner_renews_lease(self, test_session):
        job = create_job(
            test_session,
            lease_owner="worker-a",
            lease_expires_at=datetime.utcnow() + timedelta(seconds=5),
        )
        store = JobStore(test_session)

        assert store.renew_lease(job.id, "worker-a", 600) is True
        assert store.load_job(job.id).lease_expires_at > datetime.utcnow() + timedelta(seconds=500)
        assert store.claim_lease(job.id, "worker-b", 60) is False

    def test_renew_fails_after_takeover(self, test_session):
        job = create_job(
            test_session,
            lease_owner="worker-a",
            lease_expires_at=datetime.utcnow() - timedelta(seconds=1),
        )
        store = JobStore(test_session)
        store.claim_lease(job.id, "worker-b", 60)

        assert store.renew_lease(job.id, "worker-a", 600) is False
        assert store.load_job(job.id).lease_owner == "worker-b"

    def test_release_by_non_owner_is_ignored(self, test_session):
        job = create_job(test_session)
        store = JobStore(test_session)
        store.claim_lease(job.id, "worker-a", 60)
        store.release_lease(job.id, "worker-b")
        assert store.load_job(job.id).lease_owner == "worker-a"


class TestSweeping:
    """Tests for stale-job failure and retention."""

    def test_marks_only_stale_active_jobs(self, test_session):
        old = datetime.utcnow() - timedelta(minutes=10)
        stale = create_job(test_session, status="importing", target_id=1, updated_at=old)
        fresh = create_job(test_session, status="importing", target_id=2)
        done = create_job(test_session, status="completed", target_id=3, updated_at=old)

        store = JobStore(test_session)
        failed = store.mark_stale_jobs_failed(datetime.utcnow() - timedelta(minutes=5), "timed out")

        assert [j.id for j in failed] == [stale.id]
        assert store.load_job(stale.id).error == "timed out"
        assert store.load_job(fresh.id).status == "importing"
        assert store.load_job(done.id).status == "completed"

    def test_filters_restrict_sweep(self, test_session):
        old = datetime.utcnow() - timedelta(minutes=10)
        create_job(test_session, status="downloading", target_id=1, updated_at=old)
        other = create_job(test_session, status="downloading", target_id=2, updated_at=old)

        failed = JobStore(test_session).mark_stale_jobs_failed(datetime.utcnow(), "stuck", target_id=2)

        assert [j.id for j in failed] == [other.id]

    def test_delete_expired_jobs_removes_artifacts(self, test_session, tmp_path):
        old = datetime.utcnow() - timedelta(days=2)
        artifact = tmp_path / "job-1.jsonl"
        artifact.write_text("{}\n")
        create_job(test_session, status="failed", updated_at=old, artifact_path=str(artifact))
        create_job(test_session, status="importing", updated_at=old, target_id=2)
        create_job(test_session, status="completed", target_id=3)

        deleted = JobStore(test_session).delete_expired_jobs(datetime.utcnow() - timedelta(hours=24))

        assert deleted == 1
        assert not artifact.exists()
        assert test_session.query(IngestJob).count() == 2


class TestArtifacts:
    """Tests for cached fetch output."""

    RECORDS = [{"lineup_key": "a", "name": "A"}, {"lineup_key": "b", "name": "Bé"}]

    def test_small_artifact_stored_inline(self, test_session, artifact_dir):
        job = create_job(test_session)
        fields = save_artifact(job, self.RECORDS, inline_max_bytes=10_000)
        assert fields["artifact_path"] is None
        assert json.loads(fields["artifact_data"]) == self.RECORDS
        assert not artifact_dir.exists()

    def test_large_artifact_written_to_disk(self, test_session, artifact_dir):
        job = create_job(test_session)
        fields = save_artifact(job, self.RECORDS, inline_max_bytes=10)
        assert fields["artifact_data"] is None
        assert fields["artifact_path"] == str(artifact_dir / f"job-{job.id}.jsonl")

        for name, value in fields.items():
            setattr(job, name, value)
        assert load_artifact(job) == self.RECORDS

    def test_missing_artifact_file_loads_as_none(self, test_session, tmp_path):
        job = create_job(test_session, artifact_path=str(tmp_path / "gone.jsonl"))
        assert load_artifact(job) is None

    def test_job_without_artifact(self, test_session):
        assert load_artifact(create_job(test_session)) is None

    def test_remove_artifact_file_tolerates_missing(self, tmp_path):
        remove_artifact_file(str(tmp_path / "nothing.jsonl"))
        remove_artifact_file(None)
