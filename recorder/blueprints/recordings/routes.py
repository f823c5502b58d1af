import json

from flask import current_app, jsonify, request, send_file
from flask_login import current_user, login_required

from . import bp
from ...errors import BadRequest, RecordingError
from ...jobs.retention import run_retention_sweep
from ...services.lifecycle import get_controller
from ...services.storage import LocalBlobStore, get_blob_store


def _payload():
    """JSON body, or form fields for multipart requests."""
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _participants(data):
    raw = data.get("participants", data.get("participantIds"))
    if raw is None or raw == "":
        return None
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            raise BadRequest("participants must be a JSON list of user ids")
    if not isinstance(raw, list):
        raise BadRequest("participants must be a JSON list of user ids")
    return [str(u) for u in raw]


@bp.app_errorhandler(RecordingError)
def handle_recording_error(err):
    if err.status_code >= 500:
        current_app.logger.warning("%s: %s", err.code, err.message)
    return jsonify(err.to_dict()), err.status_code


@bp.post("/recordings/start")
@login_required
def start_recording():
    data = _payload()
    job = get_controller().start(
        current_user,
        data.get("roomId"),
        data.get("roomCode"),
        data.get("roomName"),
        participant_ids=_participants(data),
    )
    return jsonify({
        "recordingId": job.id,
        "status": job.status,
        "startTime": job.to_dict()["startTime"],
        "message": "Recording started successfully",
    })


@bp.post("/recordings/<recording_id>/stop")
@login_required
def stop_recording(recording_id):
    data = _payload()
    job = get_controller().stop(recording_id, duration=data.get("duration"), user=current_user)
    return jsonify({
        "recordingId": job.id,
        "status": job.status,
        "durationSeconds": job.duration_seconds,
        "message": "Recording stopped successfully",
    })


@bp.post("/recordings/<recording_id>/upload")
@login_required
def upload_recording(recording_id):
    f = request.files.get("video")
    if f is None or not getattr(f, "filename", ""):
        raise BadRequest("No video file provided")
    job = get_controller().upload(recording_id, current_user, f, participant_ids=_participants(request.form))
    return jsonify({
        "recordingId": job.id,
        "status": job.status,
        "fileSizeBytes": job.file_size_bytes,
        "durationSeconds": job.duration_seconds,
        "storageUrl": job.storage_url,
        "message": "Recording uploaded successfully",
    })


@bp.post("/recordings/<recording_id>/upload/retry")
@login_required
def retry_upload(recording_id):
    job = get_controller().retry_offload(recording_id, current_user)
    return jsonify({"recordingId": job.id, "status": job.status, "fileSizeBytes": job.file_size_bytes})


@bp.post("/recordings/<recording_id>/upload/init")
@login_required
def init_chunked_upload(recording_id):
    data = _payload()
    out = get_controller().init_chunked_upload(
        recording_id,
        current_user,
        data.get("totalChunks"),
        file_name=data.get("fileName"),
        file_size=data.get("fileSize"),
    )
    out["message"] = "Upload initialized"
    return jsonify(out)


@bp.post("/recordings/<recording_id>/upload/chunk")
@login_required
def upload_chunk(recording_id):
    f = request.files.get("chunk")
    if f is None:
        raise BadRequest("No chunk provided")
    upload_id = request.form.get("uploadId")
    chunk_index = request.form.get("chunkIndex")
    total_chunks = request.form.get("totalChunks")
    size = get_controller().put_chunk(
        recording_id, current_user, upload_id, chunk_index, f.stream, total_chunks=total_chunks
    )
    return jsonify({
        "uploadId": upload_id,
        "chunkIndex": int(chunk_index),
        "size": size,
        "received": True,
    })


@bp.post("/recordings/<recording_id>/upload/complete")
@login_required
def complete_chunked_upload(recording_id):
    data = _payload()
    job = get_controller().complete_chunked_upload(
        recording_id,
        current_user,
        data.get("uploadId"),
        file_name=data.get("fileName"),
        participant_ids=_participants(data),
    )
    return jsonify({
        "recordingId": job.id,
        "status": job.status,
        "fileSizeBytes": job.file_size_bytes,
        "message": "Upload completed successfully",
    })


@bp.get("/recordings")
@login_required
def list_recordings():
    return jsonify([j.to_dict() for j in get_controller().list_for_user(current_user)])


@bp.get("/rooms/<room_id>/recordings")
@login_required
def list_room_recordings(room_id):
    return jsonify([j.to_dict() for j in get_controller().list_by_room(room_id, current_user)])


@bp.get("/recordings/<recording_id>")
@login_required
def get_recording(recording_id):
    return jsonify(get_controller().get_for_user(recording_id, current_user).to_dict())


@bp.get("/recordings/<recording_id>/download")
@login_required
def download_recording(recording_id):
    url, ttl = get_controller().download_url(recording_id, current_user)
    return jsonify({
        "recordingId": recording_id,
        "downloadUrl": url,
        "expiresIn": ttl,
        "message": "Download URL generated successfully",
    })


@bp.delete("/recordings/<recording_id>")
@login_required
def delete_recording(recording_id):
    get_controller().delete(recording_id, current_user)
    return jsonify({"recordingId": recording_id, "status": "deleted", "message": "Recording deleted successfully"})


@bp.post("/recordings/cleanup/<room_id>")
@login_required
def cleanup_room(room_id):
    job = get_controller().cleanup_room(room_id, current_user)
    return jsonify({
        "recordingId": job.id,
        "status": job.status,
        "message": "Stale recording has been cleaned up. You can now start a new recording.",
    })


@bp.post("/recordings/cleanup-old")
@login_required
def run_cleanup():
    current_app.logger.info("Manual retention sweep triggered by %s", current_user.id)
    result = run_retention_sweep()
    return jsonify({"status": "success", "result": result, "message": "Cleanup completed successfully"})


@bp.get("/recordings/config/status")
def storage_status():
    store = get_blob_store()
    configured = store.is_configured()
    return jsonify({
        "backend": current_app.config.get("STORAGE_BACKEND", "local"),
        "configured": configured,
    })


# signed links for the local backend; S3 links point at the bucket directly
@bp.get("/recordings/files/<token>")
def serve_local_blob(token):
    store = get_blob_store()
    if not isinstance(store, LocalBlobStore):
        raise BadRequest("Local downloads are not enabled")
    path = store.resolve_token(token)
    return send_file(path, as_attachment=True)
