"""Retention sweep: delete completed recordings past their deadline.

Every expired job loses its blob and its metadata record. A blob delete that
errors or outlives the per-object timeout is logged and counted, and the
metadata record is still removed.
"""
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout

from flask import current_app

from ..extensions import rq
from ..models.base import utcnow
from ..services.lifecycle import build_assembler, get_controller
from ..services.recording_store import RecordingStore
from ..services.storage import get_blob_store


class RetentionSweeper:
    def __init__(self, store, blob_store, logger, object_timeout=30.0, max_seconds=None, max_workers=4):
        self.store = store
        self.blob_store = blob_store
        self.logger = logger
        self.object_timeout = object_timeout
        self.max_seconds = max_seconds
        self.max_workers = max_workers

    def run(self, now=None) -> dict:
        now = now or utcnow()
        started = time.monotonic()
        expired = [(j.id, j.storage_locator, j.room_name) for j in self.store.list_expired(now)]
        result = {"found": len(expired), "deleted": 0, "failed": 0, "blob_failures": 0, "deferred": 0}
        if not expired:
            self.logger.info("Retention sweep: no recordings to delete")
            return result

        self.logger.info("Retention sweep: %d recording(s) to delete", len(expired))
        # blob deletes run on worker threads so a hung remote call can be abandoned
        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="retention-delete")
        try:
            for pos, (job_id, locator, room_name) in enumerate(expired):
                if self.max_seconds and time.monotonic() - started >= self.max_seconds:
                    result["deferred"] = len(expired) - pos
                    self.logger.warning("Retention sweep time box reached; %d left for the next run", result["deferred"])
                    break

                if locator:
                    future = executor.submit(self.blob_store.delete, locator)
                    try:
                        future.result(timeout=self.object_timeout)
                    except FutureTimeout:
                        result["blob_failures"] += 1
                        self.logger.warning("Blob delete timed out after %ss: %s", self.object_timeout, locator)
                    except Exception:
                        result["blob_failures"] += 1
                        self.logger.warning("Failed to delete blob %s", locator, exc_info=True)

                try:
                    self.store.delete(job_id)
                    result["deleted"] += 1
                    self.logger.info("Deleted expired recording %s (%s)", job_id, room_name)
                except Exception:
                    result["failed"] += 1
                    self.logger.exception("Failed to delete recording %s", job_id)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        self.logger.info(
            "Retention sweep complete: %d deleted, %d failed, %d blob delete failure(s)",
            result["deleted"], result["failed"], result["blob_failures"],
        )
        return result


def run_retention_sweep(now=None) -> dict:
    """One full retention pass. Needs an app context (RQ worker or request)."""
    app = current_app._get_current_object()
    cfg = app.config
    now = now or utcnow()

    result = {}
    if cfg.get("RECONCILE_STALE_ON_SWEEP"):
        result["stale_reconciled"] = get_controller().reconcile_stale(now)

    sweeper = RetentionSweeper(
        RecordingStore(),
        get_blob_store(),
        app.logger,
        object_timeout=cfg.get("RETENTION_SWEEP_OBJECT_TIMEOUT_SECONDS", 30),
        max_seconds=cfg.get("RETENTION_SWEEP_MAX_SECONDS"),
    )
    result.update(sweeper.run(now))

    try:
        result["upload_sessions_purged"] = build_assembler(app).purge_abandoned(
            cfg.get("UPLOAD_SESSION_MAX_AGE_SECONDS", 86400)
        )
    except OSError:
        app.logger.exception("Purging abandoned upload sessions failed")
        result["upload_sessions_purged"] = 0
    return result


class RetentionScheduler:
    """Background thread that dispatches the sweep on a fixed interval.

    The first run happens as soon as the thread starts. Each tick goes through
    the RQ wrapper, so it lands on a worker when Redis is reachable and runs
    inline otherwise.
    """

    def __init__(self, app, interval_seconds=3600, run_on_start=True):
        self.app = app
        self.interval_seconds = interval_seconds
        self.run_on_start = run_on_start
        self.runs = 0
        self.last_result = None
        self._stop = threading.Event()
        self._thread = None

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="retention-sweep", daemon=True)
        self._thread.start()
        self.app.logger.info("Retention sweep scheduler started (every %ss)", self.interval_seconds)

    def stop(self, timeout=5.0):
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout)
        self._thread = None
        self.app.logger.info("Retention sweep scheduler stopped")

    def _loop(self):
        if self.run_on_start:
            self.tick()
        while not self._stop.wait(self.interval_seconds):
            self.tick()

    def tick(self):
        with self.app.app_context():
            try:
                self.last_result = rq.enqueue(
                    run_retention_sweep,
                    job_timeout=int(self.app.config.get("RETENTION_SWEEP_MAX_SECONDS") or 600) + 60,
                    description="recording retention sweep",
                )
            except Exception:
                self.app.logger.exception("Retention sweep run failed")
            finally:
                self.runs += 1
