"""
Job Store & Job State Machine Tests.

Transitions must be strictly forward (pending -> processing -> completed|failed),
completed/failed records must carry their payload, and processed_rows must
never go backwards, including under concurrent writers.
"""

import threading

import pytest

from order_export.core.exceptions import (
    DuplicateJobError,
    IllegalJobTransitionError,
    JobNotFoundError,
)
from order_export.schemas.export import ExportStatus
from order_export.services.job_store import ExportJob, InMemoryJobStore, new_job_id


@pytest.fixture
def store():
    return InMemoryJobStore()


class TestJobStateMachine:
    def test_happy_path(self):
        job = ExportJob(job_id="j1", total_row_estimate=10)
        assert job.status == ExportStatus.PENDING
        assert job.completed_at is None

        job = job.start().with_progress(10).complete("/exports/j1.xlsx")
        assert job.status == ExportStatus.COMPLETED
        assert job.result_location == "/exports/j1.xlsx"
        assert job.processed_rows == 10
        assert job.completed_at is not None
        assert job.error_detail is None

    def test_failure_records_detail(self):
        job = ExportJob(job_id="j1").start().fail("ORA-03113")
        assert job.status == ExportStatus.FAILED
        assert job.error_detail == "ORA-03113"
        assert job.completed_at is not None
        assert job.result_location is None

    def test_failure_detail_never_empty(self):
        job = ExportJob(job_id="j1").start().fail("")
        assert job.error_detail

    @pytest.mark.parametrize(
        "advance",
        [
            lambda job: job.complete("/x.xlsx"),
            lambda job: job.fail("boom"),
            lambda job: job.with_progress(5),
        ],
    )
    def test_pending_cannot_skip_processing(self, advance):
        with pytest.raises(IllegalJobTransitionError):
            advance(ExportJob(job_id="j1"))

    def test_finished_jobs_are_terminal(self):
        completed = ExportJob(job_id="j1").start().complete("/x.xlsx")
        failed = ExportJob(job_id="j2").start().fail("boom")
        for job in (completed, failed):
            with pytest.raises(IllegalJobTransitionError):
                job.start()
            with pytest.raises(IllegalJobTransitionError):
                job.complete("/y.xlsx")
            with pytest.raises(IllegalJobTransitionError):
                job.fail("again")
            with pytest.raises(IllegalJobTransitionError):
                job.with_progress(100)

    def test_complete_requires_location(self):
        with pytest.raises(ValueError):
            ExportJob(job_id="j1").start().complete("")

    def test_progress_never_decreases(self):
        job = ExportJob(job_id="j1").start().with_progress(3000)
        assert job.with_progress(1000).processed_rows == 3000

    def test_records_are_immutable(self):
        job = ExportJob(job_id="j1")
        with pytest.raises(Exception):
            job.status = ExportStatus.COMPLETED


class TestInMemoryJobStore:
    def test_create_and_get(self, store):
        job = store.create(ExportJob(job_id=new_job_id()))
        assert store.get(job.job_id) is job
        assert store.get("missing") is None

    def test_duplicate_id_rejected(self, store):
        store.create(ExportJob(job_id="dup"))
        with pytest.raises(DuplicateJobError):
            store.create(ExportJob(job_id="dup"))

    def test_generated_ids_are_unique(self):
        ids = {new_job_id() for _ in range(10_000)}
        assert len(ids) == 10_000

    def test_replace_whole_record(self, store):
        job = store.create(ExportJob(job_id="j1"))
        started = store.replace(job.start())
        assert store.get("j1") is started
        assert store.get("j1").status == ExportStatus.PROCESSING

    def test_replace_unknown_id(self, store):
        with pytest.raises(JobNotFoundError):
            store.replace(ExportJob(job_id="ghost"))

    def test_update_unknown_id(self, store):
        with pytest.raises(JobNotFoundError):
            store.update("ghost", lambda job: job.start())

    def test_failed_update_leaves_record_untouched(self, store):
        store.create(ExportJob(job_id="j1"))
        with pytest.raises(IllegalJobTransitionError):
            store.update("j1", lambda job: job.complete("/x.xlsx"))
        assert store.get("j1").status == ExportStatus.PENDING

    def test_update_cannot_change_id(self, store):
        store.create(ExportJob(job_id="j1"))
        with pytest.raises(ValueError):
            store.update("j1", lambda job: ExportJob(job_id="other"))

    def test_delete_drops_record_and_id(self, store):
        store.create(ExportJob(job_id="j1"))
        store.delete("j1")

        assert store.get("j1") is None
        assert len(store) == 0
        with pytest.raises(JobNotFoundError):
            store.update("j1", lambda job: job.start())
        # The id can be registered again
        store.create(ExportJob(job_id="j1"))

    def test_delete_unknown_id_is_ignored(self, store):
        store.delete("ghost")
        assert len(store) == 0

    def test_concurrent_progress_is_serialized(self, store):
        """Many writers on one id: the final value is the max, never a lost update below it."""
        store.create(ExportJob(job_id="j1"))
        store.update("j1", lambda job: job.start())

        def worker(offset):
            for value in range(offset, 2000, 8):
                store.update("j1", lambda job, v=value: job.with_progress(v))

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.get("j1").processed_rows == 1999

    def test_concurrent_jobs_are_independent(self, store):
        job_ids = [f"job-{i}" for i in range(20)]
        for job_id in job_ids:
            store.create(ExportJob(job_id=job_id))

        def run(job_id):
            store.update(job_id, lambda job: job.start())
            for processed in range(0, 1000, 100):
                store.update(job_id, lambda job, p=processed: job.with_progress(p))
            store.update(job_id, lambda job: job.complete(f"/exports/{job_id}.xlsx"))

        threads = [threading.Thread(target=run, args=(job_id,)) for job_id in job_ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(store) == 20
        for job_id in job_ids:
            job = store.get(job_id)
            assert job.status == ExportStatus.COMPLETED
            assert job.processed_rows == 900
            assert job.result_location == f"/exports/{job_id}.xlsx"
