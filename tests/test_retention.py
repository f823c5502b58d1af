import logging
import threading
import time
from datetime import timedelta

import pytest

from recorder.errors import StorageFailure
from recorder.jobs.retention import RetentionScheduler, RetentionSweeper, run_retention_sweep
from recorder.models import RecordingJob, RecordingStatus
from recorder.models.base import utcnow
from recorder.services.recording_store import RecordingStore

log = logging.getLogger('test.retention')


class RecordingBlobStore:
    def __init__(self, fail=(), hang=()):
        self.fail = set(fail)
        self.hang = set(hang)
        self.release = threading.Event()
        self.deleted = []

    def delete(self, name):
        if name in self.hang:
            self.release.wait(5)
        if name in self.fail:
            raise StorageFailure(f'cannot delete {name}')
        self.deleted.append(name)
        return True


@pytest.fixture
def store(app_ctx):
    return RecordingStore()


def _completed(store, room, deadline, status=RecordingStatus.COMPLETED):
    job = RecordingJob(
        room_id=room, room_code=room.upper(), room_name=room, owner_id='alice',
        status=status, start_time=utcnow() - timedelta(days=4),
        storage_locator=f'{room}.webm', retention_deadline=deadline,
    )
    return store.create(job)


def test_sweep_deletes_only_expired_completed_jobs(store):
    now = utcnow()
    expired = _completed(store, 'a', now - timedelta(hours=1))
    future = _completed(store, 'b', now + timedelta(hours=1))
    failed = _completed(store, 'c', now - timedelta(days=1), status=RecordingStatus.FAILED)
    blobs = RecordingBlobStore()

    result = RetentionSweeper(store, blobs, log).run(now)

    assert result['found'] == 1 and result['deleted'] == 1 and result['failed'] == 0
    assert blobs.deleted == ['a.webm']
    assert store.find(expired) is None
    assert store.find(future) is not None
    assert store.find(failed) is not None


def test_blob_failure_does_not_block_other_jobs_or_metadata(store):
    now = utcnow()
    a = _completed(store, 'a', now - timedelta(hours=2))
    b = _completed(store, 'b', now - timedelta(hours=1))
    blobs = RecordingBlobStore(fail={'a.webm'})

    result = RetentionSweeper(store, blobs, log).run(now)

    assert result['blob_failures'] == 1
    assert result['deleted'] == 2
    assert blobs.deleted == ['b.webm']
    assert store.find(a) is None
    assert store.find(b) is None


def test_hung_blob_delete_times_out_and_sweep_moves_on(store):
    now = utcnow()
    a = _completed(store, 'a', now - timedelta(hours=2))
    b = _completed(store, 'b', now - timedelta(hours=1))
    blobs = RecordingBlobStore(hang={'a.webm'})

    started = time.monotonic()
    try:
        result = RetentionSweeper(store, blobs, log, object_timeout=0.2).run(now)
    finally:
        blobs.release.set()

    assert time.monotonic() - started < 4
    assert result['blob_failures'] == 1
    assert result['deleted'] == 2
    assert 'b.webm' in blobs.deleted
    assert store.find(a) is None and store.find(b) is None


def test_time_box_defers_remaining_jobs(store):
    now = utcnow()
    _completed(store, 'a', now - timedelta(hours=1))
    sweeper = RetentionSweeper(store, RecordingBlobStore(), log, max_seconds=1e-9)
    result = sweeper.run(now)
    assert result['deferred'] == 1 and result['deleted'] == 0
    assert len(store.list_expired(now)) == 1


def test_run_retention_sweep_uses_app_config(app, store, controller, alice):
    app.config['RECONCILE_STALE_ON_SWEEP'] = True
    stale = controller.start(alice, 'r1', 'R1', 'Room')
    store.update(stale.id, start_time=utcnow() - timedelta(hours=1))
    _completed(store, 'gone', utcnow() - timedelta(minutes=1))

    result = run_retention_sweep()

    assert result['stale_reconciled'] == 1
    assert result['deleted'] == 1
    assert result['upload_sessions_purged'] == 0
    assert store.get(stale.id).status == RecordingStatus.FAILED


def test_scheduler_runs_immediately_and_stops(app, store):
    _completed(store, 'a', utcnow() - timedelta(hours=1))
    scheduler = RetentionScheduler(app, interval_seconds=3600)
    scheduler.start()
    try:
        deadline = time.monotonic() + 5
        while scheduler.runs == 0 and time.monotonic() < deadline:
            time.sleep(0.05)
    finally:
        scheduler.stop()

    assert scheduler.runs == 1
    assert not scheduler.running
    assert scheduler.last_result['deleted'] == 1
    assert store.list_expired(utcnow()) == []
