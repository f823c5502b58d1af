from datetime import timedelta
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from ..extensions import db
from ..errors import Conflict, NotFound
from ..models.recording import RecordingJob, RecordingParticipant, RecordingStatus


class RecordingStore:
    """Durable RecordingJob records backed by the SQLAlchemy session.

    Updates merge the given fields into the stored row; anything not named
    is left as it is.
    """

    UPDATABLE = {
        "status", "end_time", "duration_seconds", "storage_locator", "storage_url",
        "file_size_bytes", "scratch_file_path", "error_detail", "retention_deadline",
        "start_time", "room_code", "room_name", "owner_name",
    }

    def __init__(self, session=None):
        self.session = session or db.session

    def create(self, job: RecordingJob, participant_ids=None) -> str:
        if participant_ids:
            self._set_participants(job, participant_ids)
        self.session.add(job)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            existing = self.get_active(job.room_id)
            raise Conflict(
                "A recording is already in progress for this room",
                recordingId=existing.id if existing else None,
            )
        return job.id

    def update(self, job_id, **fields) -> RecordingJob:
        job = self.get(job_id)
        participant_ids = fields.pop("participant_ids", None)
        unknown = set(fields) - self.UPDATABLE
        if unknown:
            raise ValueError(f"cannot update fields: {', '.join(sorted(unknown))}")
        if "status" in fields and fields["status"] not in RecordingStatus.ALL:
            raise ValueError(f"unknown status: {fields['status']}")
        for key, value in fields.items():
            setattr(job, key, value)
        if participant_ids is not None:
            self._set_participants(job, participant_ids)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise Conflict("A recording is already in progress for this room", recordingId=job_id)
        return job

    def find(self, job_id):
        return self.session.get(RecordingJob, job_id)

    def get(self, job_id) -> RecordingJob:
        job = self.find(job_id)
        if job is None:
            raise NotFound("Recording not found", recordingId=job_id)
        return job

    def list_by_room(self, room_id):
        return (
            RecordingJob.query.filter_by(room_id=room_id)
            .order_by(RecordingJob.start_time.desc())
            .all()
        )

    def list_for_user(self, user_id):
        # owned by the user or shared with them as a participant
        return (
            RecordingJob.query.filter(
                or_(
                    RecordingJob.owner_id == user_id,
                    RecordingJob.participants.any(RecordingParticipant.user_id == user_id),
                )
            )
            .order_by(RecordingJob.start_time.desc())
            .all()
        )

    def get_active(self, room_id):
        return (
            RecordingJob.query.filter(
                RecordingJob.room_id == room_id,
                RecordingJob.status.in_(RecordingStatus.ACTIVE),
            )
            .order_by(RecordingJob.start_time.desc())
            .first()
        )

    def list_expired(self, now):
        return (
            RecordingJob.query.filter(
                RecordingJob.status == RecordingStatus.COMPLETED,
                RecordingJob.retention_deadline.isnot(None),
                RecordingJob.retention_deadline <= now,
            )
            .order_by(RecordingJob.retention_deadline.asc())
            .all()
        )

    def list_stale(self, now, timeout_seconds):
        cutoff = now - timedelta(seconds=timeout_seconds)
        return (
            RecordingJob.query.filter(
                RecordingJob.status == RecordingStatus.RECORDING,
                RecordingJob.end_time.is_(None),
                RecordingJob.start_time <= cutoff,
            )
            .order_by(RecordingJob.start_time.asc())
            .all()
        )

    def delete(self, job_id) -> bool:
        job = self.find(job_id)
        if job is None:
            return False
        self.session.delete(job)
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return True

    def _set_participants(self, job, participant_ids):
        wanted = {str(u) for u in participant_ids if u}
        # keep rows that survive so their primary keys are not re-inserted
        job.participants = [p for p in job.participants if p.user_id in wanted]
        present = {p.user_id for p in job.participants}
        for user_id in sorted(wanted - present):
            job.participants.append(RecordingParticipant(user_id=user_id))
