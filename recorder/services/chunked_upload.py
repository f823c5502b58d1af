"""Chunked uploads: numbered parts under a scratch directory per upload id,
stitched into one file in index order and then discarded."""
import json
import logging
import os
import re
import shutil
import tempfile
import time
from uuid import uuid4

from ..errors import BadRequest, Forbidden, IncompleteUpload, NotFound

MANIFEST = "manifest.json"
CHUNK_PREFIX = "chunk-"
COPY_BUFFER = 1024 * 1024

_UPLOAD_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class ChunkAssembler:
    def __init__(self, base_dir: str, max_chunk_bytes=None, logger=None):
        self.base_dir = os.path.abspath(base_dir)
        self.max_chunk_bytes = max_chunk_bytes
        self.logger = logger or logging.getLogger(__name__)

    def _session_dir(self, upload_id: str) -> str:
        if not upload_id or not _UPLOAD_ID_RE.match(str(upload_id)):
            raise BadRequest("invalid uploadId", uploadId=upload_id)
        return os.path.join(self.base_dir, upload_id)

    def _write_manifest(self, session_dir, manifest):
        fd, tmp = tempfile.mkstemp(dir=session_dir, prefix=".manifest-")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(manifest, f)
        os.replace(tmp, os.path.join(session_dir, MANIFEST))

    def read_manifest(self, upload_id: str) -> dict:
        path = os.path.join(self._session_dir(upload_id), MANIFEST)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            raise NotFound("Upload session not found", uploadId=upload_id)

    def init_upload(self, total_chunks, recording_id=None, file_name=None, file_size=None, upload_id=None) -> str:
        try:
            total_chunks = int(total_chunks)
        except (TypeError, ValueError):
            raise BadRequest("totalChunks must be an integer")
        if total_chunks < 1:
            raise BadRequest("totalChunks must be at least 1")
        upload_id = upload_id or uuid4().hex
        session_dir = self._session_dir(upload_id)
        os.makedirs(session_dir, exist_ok=True)
        self._write_manifest(session_dir, {
            "upload_id": upload_id,
            "recording_id": recording_id,
            "total_chunks": total_chunks,
            "file_name": file_name,
            "file_size": file_size,
            "created_at": time.time(),
        })
        self.logger.info("Upload session %s opened (%d chunks)", upload_id, total_chunks)
        return upload_id

    def put_chunk(self, upload_id, index, stream, total_chunks=None, recording_id=None):
        """Store chunk ``index``; re-sending an index replaces its content.

        ``stream`` is bytes or a readable binary file object. The session is
        created on demand when ``total_chunks`` is given.
        """
        session_dir = self._session_dir(upload_id)
        try:
            manifest = self.read_manifest(upload_id)
        except NotFound:
            if total_chunks is None:
                raise
            self.init_upload(total_chunks, recording_id=recording_id, upload_id=upload_id)
            manifest = self.read_manifest(upload_id)

        if recording_id is not None and manifest.get("recording_id") not in (None, recording_id):
            raise Forbidden("upload session belongs to another recording", uploadId=upload_id)
        try:
            index = int(index)
        except (TypeError, ValueError):
            raise BadRequest("chunkIndex must be an integer")
        total = manifest["total_chunks"]
        if not 0 <= index < total:
            raise BadRequest(f"chunkIndex {index} outside 0..{total - 1}", uploadId=upload_id)

        # write under a private name then rename, so concurrent writers of
        # other indices (or a retry of this one) never see a torn chunk
        fd, tmp = tempfile.mkstemp(dir=session_dir, prefix=".part-")
        written = 0
        try:
            with os.fdopen(fd, "wb") as out:
                if isinstance(stream, (bytes, bytearray)):
                    out.write(stream)
                    written = len(stream)
                else:
                    while True:
                        buf = stream.read(COPY_BUFFER)
                        if not buf:
                            break
                        written += len(buf)
                        if self.max_chunk_bytes and written > self.max_chunk_bytes:
                            raise BadRequest("chunk exceeds the maximum chunk size", uploadId=upload_id)
                        out.write(buf)
            if self.max_chunk_bytes and written > self.max_chunk_bytes:
                raise BadRequest("chunk exceeds the maximum chunk size", uploadId=upload_id)
            os.replace(tmp, os.path.join(session_dir, f"{CHUNK_PREFIX}{index}"))
        except BaseException:
            try:
                os.remove(tmp)
            except OSError:
                pass
            raise
        return written

    def _present_indices(self, session_dir):
        present = {}
        for name in os.listdir(session_dir):
            if not name.startswith(CHUNK_PREFIX):
                continue
            suffix = name[len(CHUNK_PREFIX):]
            if suffix.isdigit():
                present[int(suffix)] = os.path.join(session_dir, name)
        return present

    def missing_chunks(self, upload_id):
        manifest = self.read_manifest(upload_id)
        present = self._present_indices(self._session_dir(upload_id))
        return [i for i in range(manifest["total_chunks"]) if i not in present]

    def complete(self, upload_id, dest_path: str) -> str:
        """Concatenate chunks 0..N-1 into ``dest_path`` and drop the session.

        Missing chunks raise IncompleteUpload listing the absent indices; the
        session is dropped then too and nothing is written to ``dest_path``.
        """
        session_dir = self._session_dir(upload_id)
        total = self.read_manifest(upload_id)["total_chunks"]
        missing = self.missing_chunks(upload_id)
        if missing:
            self.discard(upload_id)
            self.logger.warning("Upload session %s discarded, missing chunks %s", upload_id, missing)
            raise IncompleteUpload(upload_id, missing)
        present = self._present_indices(session_dir)

        dest_dir = os.path.dirname(os.path.abspath(dest_path))
        os.makedirs(dest_dir, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=dest_dir, prefix=".assemble-")
        try:
            with os.fdopen(fd, "wb") as out:
                # numeric order: chunk-2 before chunk-10
                for index in range(total):
                    with open(present[index], "rb") as src:
                        shutil.copyfileobj(src, out, COPY_BUFFER)
            os.replace(tmp, dest_path)
        except BaseException:
            try:
                os.remove(tmp)
            except OSError:
                pass
            raise
        self.discard(upload_id)
        self.logger.info("Upload session %s assembled into %s", upload_id, dest_path)
        return dest_path

    def discard(self, upload_id) -> bool:
        session_dir = self._session_dir(upload_id)
        if not os.path.isdir(session_dir):
            return False
        shutil.rmtree(session_dir, ignore_errors=True)
        return True

    def _sessions(self):
        if not os.path.isdir(self.base_dir):
            return
        for name in os.listdir(self.base_dir):
            if not _UPLOAD_ID_RE.match(name):
                continue
            path = os.path.join(self.base_dir, name)
            if not os.path.isdir(path):
                continue
            try:
                with open(os.path.join(path, MANIFEST), "r", encoding="utf-8") as f:
                    manifest = json.load(f)
            except (OSError, ValueError):
                manifest = {}
            yield name, path, manifest

    def discard_for_recording(self, recording_id) -> int:
        removed = 0
        for upload_id, _path, manifest in list(self._sessions()):
            if manifest.get("recording_id") == recording_id:
                removed += int(self.discard(upload_id))
        return removed

    def purge_abandoned(self, max_age_seconds, now=None) -> int:
        now = now if now is not None else time.time()
        removed = 0
        for upload_id, path, manifest in list(self._sessions()):
            created = manifest.get("created_at")
            if created is None:
                created = os.path.getmtime(path)
            if now - created >= max_age_seconds:
                removed += int(self.discard(upload_id))
                self.logger.info("Purged abandoned upload session %s", upload_id)
        return removed
