"""Recording lifecycle: recording -> processing -> completed, or failed.

The controller owns every state transition and the one-active-job-per-room
rule. Component errors (assembler, blob store) reach it as exceptions and it
decides whether the job fails or the caller may retry.
"""
import logging
import os
import time
from datetime import timedelta

from flask import current_app

from ..errors import BadRequest, Conflict, Forbidden, InvalidTransition, NotFound, Stale, StorageFailure
from ..models.base import utcnow
from ..models.recording import RecordingJob, RecordingStatus
from .chunked_upload import ChunkAssembler
from .recording_store import RecordingStore
from .storage import get_blob_store

DEFAULT_EXTENSION = ".webm"


class RecordingController:
    def __init__(self, store, blob_store, assembler, config, logger=None):
        self.store = store
        self.blob_store = blob_store
        self.assembler = assembler
        self.logger = logger or logging.getLogger(__name__)
        self.retention_window = timedelta(days=float(config.get("RECORDING_RETENTION_DAYS", 3)))
        self.stale_timeout = timedelta(seconds=int(config.get("RECORDING_STALE_TIMEOUT_SECONDS", 300)))
        self.download_ttl = int(config.get("DOWNLOAD_URL_TTL_SECONDS", 3600))
        self.chunk_size = int(config.get("CHUNK_SIZE_BYTES", 5 * 1024 * 1024))
        self.scratch_dir = os.path.abspath(config.get("RECORDING_SCRATCH_DIR", "./recordings"))
        self.allowed_extensions = tuple(config.get("ALLOWED_RECORDING_EXTENSIONS") or ("webm", "mp4", "mkv"))

    # -- helpers ---------------------------------------------------------

    def is_stale(self, job, now=None) -> bool:
        now = now or utcnow()
        return (
            job.status == RecordingStatus.RECORDING
            and job.end_time is None
            and job.start_time <= now - self.stale_timeout
        )

    def _require_owner(self, job, user, action):
        if not job.can_delete(user.id):
            raise Forbidden(f"Unauthorized to {action} this recording", recordingId=job.id)

    def _require_status(self, job, *statuses):
        if job.status not in statuses:
            raise InvalidTransition(
                f"recording is {job.status}, expected {' or '.join(statuses)}",
                recordingId=job.id,
                status=job.status,
            )

    def _extension(self, file_name):
        ext = os.path.splitext(file_name or "")[1].lower()
        if not ext:
            return DEFAULT_EXTENSION
        if ext.lstrip(".") not in self.allowed_extensions:
            raise BadRequest(
                f"Only video files are allowed ({', '.join(self.allowed_extensions)})",
                fileName=file_name,
            )
        return ext

    def _scratch_path(self, job, ext):
        os.makedirs(self.scratch_dir, exist_ok=True)
        return os.path.join(self.scratch_dir, f"{job.id}-{int(time.time() * 1000)}{ext}")

    def _remove_file(self, path):
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError:
            self.logger.warning("Could not remove scratch file %s", path, exc_info=True)

    def _discard_scratch(self, job):
        if job.scratch_file_path:
            self._remove_file(job.scratch_file_path)
        try:
            self.assembler.discard_for_recording(job.id)
        except OSError:
            self.logger.warning("Could not discard upload sessions for %s", job.id, exc_info=True)

    def _check_room_free(self, room_id, now):
        active = self.store.get_active(room_id)
        if active is None:
            return
        if self.is_stale(active, now):
            raise Stale(active)
        raise Conflict(
            "A recording is already in progress for this room. Please stop the current recording first.",
            recordingId=active.id,
        )

    # -- transitions -----------------------------------------------------

    def start(self, user, room_id, room_code, room_name, participant_ids=None, now=None) -> RecordingJob:
        if not room_id or not room_code or not room_name:
            raise BadRequest("Missing required fields: roomId, roomCode, roomName")
        now = now or utcnow()
        try:
            self._check_room_free(room_id, now)
        except Stale as e:
            self.logger.warning("Reconciling stale recording %s for room %s", e.job.id, room_id)
            self.fail(
                e.job.id,
                f"No stop signal within {int(self.stale_timeout.total_seconds())}s; superseded by a new recording",
                now=now,
            )

        job = RecordingJob(
            room_id=room_id,
            room_code=room_code,
            room_name=room_name,
            owner_id=user.id,
            owner_name=user.name,
            status=RecordingStatus.RECORDING,
            start_time=now,
        )
        self.store.create(job, participant_ids=participant_ids)
        self.logger.info("Recording %s started for room %s by %s", job.id, room_id, user.id)
        return job

    def stop(self, job_id, duration=None, now=None, user=None) -> RecordingJob:
        job = self.store.get(job_id)
        self._require_status(job, RecordingStatus.RECORDING)
        now = now or utcnow()
        if duration is None or duration == "":
            seconds = int((now - job.start_time).total_seconds())
        else:
            try:
                seconds = int(float(duration))
            except (TypeError, ValueError, OverflowError):
                raise BadRequest("duration must be a number of seconds")
        job = self.store.update(
            job.id,
            status=RecordingStatus.PROCESSING,
            end_time=now,
            duration_seconds=max(seconds, 0),
        )
        self.logger.info("Recording %s stopped by %s", job.id, getattr(user, "id", None))
        return job

    def upload(self, job_id, user, file_storage, participant_ids=None) -> RecordingJob:
        job = self.store.get(job_id)
        self._require_owner(job, user, "upload")
        self._require_status(job, RecordingStatus.PROCESSING)
        ext = self._extension(getattr(file_storage, "filename", None))
        path = self._scratch_path(job, ext)
        file_storage.save(path)
        return self._offload(job, path, participant_ids)

    def retry_offload(self, job_id, user) -> RecordingJob:
        job = self.store.get(job_id)
        self._require_owner(job, user, "upload")
        self._require_status(job, RecordingStatus.PROCESSING)
        if not job.scratch_file_path or not os.path.exists(job.scratch_file_path):
            raise NotFound("No pending recording file to upload", recordingId=job.id)
        return self._offload(job, job.scratch_file_path)

    def init_chunked_upload(self, job_id, user, total_chunks, file_name=None, file_size=None) -> dict:
        job = self.store.get(job_id)
        self._require_owner(job, user, "upload")
        self._require_status(job, *RecordingStatus.ACTIVE)
        self._extension(file_name)
        upload_id = self.assembler.init_upload(
            total_chunks, recording_id=job.id, file_name=file_name, file_size=file_size
        )
        return {"uploadId": upload_id, "chunkSize": self.chunk_size, "totalChunks": int(total_chunks)}

    def put_chunk(self, job_id, user, upload_id, chunk_index, stream, total_chunks=None) -> int:
        job = self.store.get(job_id)
        self._require_owner(job, user, "upload")
        self._require_status(job, *RecordingStatus.ACTIVE)
        return self.assembler.put_chunk(
            upload_id, chunk_index, stream, total_chunks=total_chunks, recording_id=job.id
        )

    def complete_chunked_upload(self, job_id, user, upload_id, file_name=None, participant_ids=None) -> RecordingJob:
        job = self.store.get(job_id)
        self._require_owner(job, user, "upload")
        self._require_status(job, RecordingStatus.PROCESSING)
        manifest = self.assembler.read_manifest(upload_id)
        if manifest.get("recording_id") not in (None, job.id):
            raise Forbidden("upload session belongs to another recording", uploadId=upload_id)
        ext = self._extension(file_name or manifest.get("file_name"))
        path = self.assembler.complete(upload_id, self._scratch_path(job, ext))
        return self._offload(job, path, participant_ids)

    def _offload(self, job, local_path, participant_ids=None) -> RecordingJob:
        ext = os.path.splitext(local_path)[1] or DEFAULT_EXTENSION
        object_name = f"{job.room_code}-{job.id}{ext}"
        size = os.path.getsize(local_path)
        previous = job.scratch_file_path
        if previous and os.path.abspath(previous) != os.path.abspath(local_path):
            # left behind by an earlier failed offload
            self._remove_file(previous)
        self.store.update(job.id, scratch_file_path=local_path)
        try:
            url = self.blob_store.upload(
                local_path,
                object_name,
                metadata={"recording_id": job.id, "room_id": job.room_id, "owner_id": job.owner_id},
            )
        except StorageFailure:
            self.logger.warning("Offload of recording %s failed; scratch file kept at %s", job.id, local_path)
            raise

        self.store.session.refresh(job)
        if job.status != RecordingStatus.PROCESSING:
            # failed or cleaned up while the upload was in flight
            try:
                self.blob_store.delete(object_name)
            except StorageFailure:
                self.logger.warning("Could not remove orphaned blob %s", object_name, exc_info=True)
            raise InvalidTransition("recording left processing during upload", recordingId=job.id, status=job.status)

        fields = dict(
            status=RecordingStatus.COMPLETED,
            storage_locator=object_name,
            storage_url=url,
            file_size_bytes=size,
            retention_deadline=(job.end_time or utcnow()) + self.retention_window,
            scratch_file_path=None,
        )
        if participant_ids is not None:
            fields["participant_ids"] = participant_ids
        job = self.store.update(job.id, **fields)
        self.logger.info("Recording %s completed (%d bytes) -> %s", job.id, size, url)
        return job

    def fail(self, job_id, detail, now=None) -> RecordingJob:
        job = self.store.get(job_id)
        if not job.is_active:
            raise InvalidTransition(f"recording is already {job.status}", recordingId=job.id, status=job.status)
        self._discard_scratch(job)
        job = self.store.update(
            job.id,
            status=RecordingStatus.FAILED,
            error_detail=detail,
            end_time=job.end_time or now or utcnow(),
            scratch_file_path=None,
        )
        self.logger.info("Recording %s failed: %s", job.id, detail)
        return job

    def cleanup_room(self, room_id, user) -> RecordingJob:
        active = self.store.get_active(room_id)
        if active is None:
            raise NotFound("No active recording found for this room", roomId=room_id)
        return self.fail(active.id, f"Cleanup requested by user {user.id}")

    def reconcile_stale(self, now=None) -> int:
        now = now or utcnow()
        count = 0
        for job in self.store.list_stale(now, int(self.stale_timeout.total_seconds())):
            try:
                self.fail(job.id, "No stop signal within the liveness timeout", now=now)
                count += 1
            except InvalidTransition:
                continue
        return count

    def delete(self, job_id, user) -> None:
        job = self.store.get(job_id)
        self._require_owner(job, user, "delete")
        if job.storage_locator:
            try:
                self.blob_store.delete(job.storage_locator)
            except StorageFailure:
                # the metadata goes regardless; the sweep never sees this job again
                self.logger.warning("Failed to delete blob %s", job.storage_locator, exc_info=True)
        self._discard_scratch(job)
        self.store.delete(job.id)
        self.logger.info("Recording %s deleted by %s", job_id, user.id)

    # -- reads -----------------------------------------------------------

    def get_for_user(self, job_id, user) -> RecordingJob:
        job = self.store.get(job_id)
        if not job.can_read(user.id):
            raise Forbidden("Unauthorized to access this recording", recordingId=job.id)
        return job

    def download_url(self, job_id, user):
        job = self.store.get(job_id)
        if not job.can_read(user.id):
            raise Forbidden("Unauthorized to download this recording", recordingId=job.id)
        if job.status != RecordingStatus.COMPLETED or not job.storage_locator:
            raise NotFound("Recording file not found", recordingId=job.id)
        return self.blob_store.signed_download_url(job.storage_locator, self.download_ttl), self.download_ttl

    def list_for_user(self, user):
        return self.store.list_for_user(user.id)

    def list_by_room(self, room_id, user):
        return [j for j in self.store.list_by_room(room_id) if j.can_read(user.id)]


def build_assembler(app=None) -> ChunkAssembler:
    app = app or current_app
    return ChunkAssembler(
        app.config["CHUNK_UPLOAD_DIR"],
        max_chunk_bytes=app.config.get("MAX_CHUNK_BYTES"),
        logger=app.logger,
    )


def get_controller() -> RecordingController:
    return RecordingController(
        RecordingStore(),
        get_blob_store(),
        build_assembler(),
        current_app.config,
        logger=current_app.logger,
    )
