"""Error taxonomy for the recording lifecycle.

Every error maps to an HTTP status so the blueprint can render it directly;
components raise these and the controller decides whether a job fails.
"""


class RecordingError(Exception):
    status_code = 500
    code = "recording_error"

    def __init__(self, message=None, **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self):
        out = {"error": self.code, "message": self.message}
        out.update(self.details)
        return out


class BadRequest(RecordingError):
    status_code = 400
    code = "bad_request"


class NotFound(RecordingError):
    status_code = 404
    code = "not_found"


class Forbidden(RecordingError):
    status_code = 403
    code = "forbidden"


class Conflict(RecordingError):
    """An active recording already exists for the room."""
    status_code = 409
    code = "conflict"


class InvalidTransition(RecordingError):
    status_code = 409
    code = "invalid_transition"


class Stale(RecordingError):
    """The active job for a room outlived the liveness timeout."""
    status_code = 409
    code = "stale"

    def __init__(self, job, message=None):
        super().__init__(message or f"recording {job.id} is stale", recordingId=job.id)
        self.job = job


class IncompleteUpload(RecordingError):
    status_code = 400
    code = "incomplete_upload"

    def __init__(self, upload_id, missing, message=None):
        missing = sorted(missing)
        super().__init__(
            message or f"upload {upload_id} is missing {len(missing)} chunk(s)",
            uploadId=upload_id,
            missingChunks=missing,
        )
        self.upload_id = upload_id
        self.missing = missing


class StorageFailure(RecordingError):
    status_code = 502
    code = "storage_failure"

    def __init__(self, message=None, retryable=True, **details):
        super().__init__(message, retryable=retryable, **details)
        self.retryable = retryable
