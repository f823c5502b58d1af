import os
from dotenv import load_dotenv
load_dotenv()


def _flag(name, default):
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret")
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///recordings.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    AUTO_CREATE_TABLES = _flag("AUTO_CREATE_TABLES", True)
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    RQ_ENABLED = _flag("RQ_ENABLED", True)

    # durable storage
    STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "local")
    LOCAL_STORAGE_DIR = os.getenv("LOCAL_STORAGE_DIR", "./storage")
    S3_ENDPOINT = os.getenv("S3_ENDPOINT")
    S3_REGION = os.getenv("S3_REGION")
    S3_BUCKET = os.getenv("S3_BUCKET")
    S3_ACCESS_KEY = os.getenv("S3_ACCESS_KEY")
    S3_SECRET_KEY = os.getenv("S3_SECRET_KEY")
    S3_PREFIX = os.getenv("S3_PREFIX", "recordings/")
    BLOB_CONNECT_TIMEOUT_SECONDS = int(os.getenv("BLOB_CONNECT_TIMEOUT_SECONDS", "10"))
    BLOB_READ_TIMEOUT_SECONDS = int(os.getenv("BLOB_READ_TIMEOUT_SECONDS", "60"))

    # scratch + uploads
    RECORDING_SCRATCH_DIR = os.getenv("RECORDING_SCRATCH_DIR", "./recordings")
    CHUNK_UPLOAD_DIR = os.getenv("CHUNK_UPLOAD_DIR", "./uploads/chunks")
    CHUNK_SIZE_BYTES = int(os.getenv("CHUNK_SIZE_BYTES", str(5 * 1024 * 1024)))
    MAX_CHUNK_BYTES = int(os.getenv("MAX_CHUNK_BYTES", str(10 * 1024 * 1024)))
    MAX_CONTENT_LENGTH = int(os.getenv("MAX_CONTENT_LENGTH", str(500 * 1024 * 1024)))
    ALLOWED_RECORDING_EXTENSIONS = tuple(
        e.strip().lower() for e in os.getenv("ALLOWED_RECORDING_EXTENSIONS", "webm,mp4,mkv").split(",") if e.strip()
    )

    # lifecycle + retention policy
    RECORDING_RETENTION_DAYS = float(os.getenv("RECORDING_RETENTION_DAYS", "3"))
    RECORDING_STALE_TIMEOUT_SECONDS = int(os.getenv("RECORDING_STALE_TIMEOUT_SECONDS", "300"))
    DOWNLOAD_URL_TTL_SECONDS = int(os.getenv("DOWNLOAD_URL_TTL_SECONDS", "3600"))
    RETENTION_SWEEP_ENABLED = _flag("RETENTION_SWEEP_ENABLED", True)
    RETENTION_SWEEP_INTERVAL_SECONDS = int(os.getenv("RETENTION_SWEEP_INTERVAL_SECONDS", "3600"))
    RETENTION_SWEEP_OBJECT_TIMEOUT_SECONDS = float(os.getenv("RETENTION_SWEEP_OBJECT_TIMEOUT_SECONDS", "30"))
    RETENTION_SWEEP_MAX_SECONDS = float(os.getenv("RETENTION_SWEEP_MAX_SECONDS", "600"))
    RECONCILE_STALE_ON_SWEEP = _flag("RECONCILE_STALE_ON_SWEEP", False)
    UPLOAD_SESSION_MAX_AGE_SECONDS = int(os.getenv("UPLOAD_SESSION_MAX_AGE_SECONDS", "86400"))
