from uuid import uuid4
from ..extensions import db
from .base import TimestampMixin, utcnow


class RecordingStatus:
    RECORDING = "recording"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    ACTIVE = (RECORDING, PROCESSING)
    TERMINAL = (COMPLETED, FAILED)
    ALL = (RECORDING, PROCESSING, COMPLETED, FAILED)


# at most one recording/processing job per room, enforced by the database
_ACTIVE_CLAUSE = db.text("status IN ('recording', 'processing')")


class RecordingJob(db.Model, TimestampMixin):
    __tablename__ = "recording_jobs"
    __table_args__ = (
        db.Index(
            "uq_recording_jobs_active_room",
            "room_id",
            unique=True,
            sqlite_where=_ACTIVE_CLAUSE,
            postgresql_where=_ACTIVE_CLAUSE,
        ),
    )

    id = db.Column(db.String(32), primary_key=True, default=lambda: uuid4().hex)

    # room (external entity, denormalized)
    room_id = db.Column(db.String(64), nullable=False, index=True)
    room_code = db.Column(db.String(64), nullable=False)
    room_name = db.Column(db.String(255), nullable=False)

    owner_id = db.Column(db.String(64), nullable=False, index=True)
    owner_name = db.Column(db.String(255))

    status = db.Column(db.String(20), nullable=False, default=RecordingStatus.RECORDING, index=True)
    start_time = db.Column(db.DateTime, nullable=False, default=utcnow)
    end_time = db.Column(db.DateTime)
    duration_seconds = db.Column(db.Integer)

    # set once offloaded to durable storage
    storage_locator = db.Column(db.String(512))
    storage_url = db.Column(db.String(1024))
    file_size_bytes = db.Column(db.BigInteger)

    scratch_file_path = db.Column(db.String(1024))
    error_detail = db.Column(db.Text)
    retention_deadline = db.Column(db.DateTime, index=True)

    participants = db.relationship(
        "RecordingParticipant",
        cascade="all, delete-orphan",
        lazy="selectin",
        back_populates="recording",
    )

    @property
    def participant_ids(self):
        return sorted(p.user_id for p in self.participants)

    @property
    def is_active(self):
        return self.status in RecordingStatus.ACTIVE

    def can_read(self, user_id) -> bool:
        return user_id == self.owner_id or user_id in self.participant_ids

    def can_delete(self, user_id) -> bool:
        return user_id == self.owner_id

    def to_dict(self):
        def iso(dt):
            return dt.isoformat() + "Z" if dt else None

        return {
            "recordingId": self.id,
            "roomId": self.room_id,
            "roomCode": self.room_code,
            "roomName": self.room_name,
            "ownerId": self.owner_id,
            "ownerName": self.owner_name,
            "participantIds": self.participant_ids,
            "status": self.status,
            "startTime": iso(self.start_time),
            "endTime": iso(self.end_time),
            "durationSeconds": self.duration_seconds,
            "storageLocator": self.storage_locator,
            "storageUrl": self.storage_url,
            "fileSizeBytes": self.file_size_bytes,
            "errorDetail": self.error_detail,
            "retentionDeadline": iso(self.retention_deadline),
        }

    def __repr__(self) -> str:
        return f"<RecordingJob id={self.id} room_id={self.room_id} status={self.status}>"


class RecordingParticipant(db.Model):
    __tablename__ = "recording_participants"

    recording_id = db.Column(
        db.String(32),
        db.ForeignKey("recording_jobs.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id = db.Column(db.String(64), primary_key=True, index=True)

    recording = db.relationship("RecordingJob", back_populates="participants")
