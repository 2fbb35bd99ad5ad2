from minio import Minio
from minio.error import S3Error
from io import BytesIO
from datetime import datetime
import logging
import os
import re
import secrets

logger = logging.getLogger(__name__)

MINIO_ENDPOINT = os.getenv("MINIO_ENDPOINT", "localhost:9000")
MINIO_ACCESS_KEY = os.getenv("MINIO_ACCESS_KEY", "minioadmin")
MINIO_SECRET_KEY = os.getenv("MINIO_SECRET_KEY", "minioadmin")
MINIO_BUCKET = os.getenv("MINIO_BUCKET", "chat")
MINIO_SECURE = os.getenv("MINIO_SECURE", "false").lower() == "true"
MINIO_PUBLIC_URL = os.getenv("MINIO_PUBLIC_URL", f"http://{MINIO_ENDPOINT}")
CHAT_UPLOAD_MAX_BYTES = int(os.getenv("CHAT_UPLOAD_MAX_BYTES", str(20 * 1024 * 1024)))

CHAT_PREFIX = "chat"
_OBJECT_RE = re.compile(rf"/{re.escape(MINIO_BUCKET)}/({CHAT_PREFIX}/[^?#]+)")

minio_client = Minio(
    MINIO_ENDPOINT,
    access_key=MINIO_ACCESS_KEY,
    secret_key=MINIO_SECRET_KEY,
    secure=MINIO_SECURE
)


def ensure_bucket(bucket_name: str):
    try:
        if not minio_client.bucket_exists(bucket_name):
            minio_client.make_bucket(bucket_name)
    except S3Error as e:
        logger.error("Error ensuring bucket %s: %s", bucket_name, e)
        raise


def build_object_name(filename: str) -> str:
    ext = (filename or "").rsplit(".", 1)[-1] if "." in (filename or "") else "bin"
    stamp = int(datetime.now().timestamp() * 1000)
    return f"{CHAT_PREFIX}/{stamp}-{secrets.randbelow(10**9)}.{ext.lower() or 'bin'}"


def object_url(object_name: str) -> str:
    return f"{MINIO_PUBLIC_URL.rstrip('/')}/{MINIO_BUCKET}/{object_name}"


def upload_attachment(file_data: bytes, filename: str, content_type: str = "application/octet-stream") -> dict:
    ensure_bucket(MINIO_BUCKET)
    object_name = build_object_name(filename)
    minio_client.put_object(
        MINIO_BUCKET,
        object_name,
        BytesIO(file_data),
        length=len(file_data),
        content_type=content_type
    )
    return {
        "url": object_url(object_name),
        "name": filename,
        "mime": content_type,
        "size": len(file_data),
    }


def object_name_from_url(url) -> str:
    if not url or not isinstance(url, str):
        return None
    match = _OBJECT_RE.search(url)
    return match.group(1) if match else None


def remove_attachment_files(attachments):
    """Delete stored chat uploads referenced by ``attachments``. Never raises."""
    if not attachments:
        return
    items = attachments if isinstance(attachments, list) else [attachments]
    for item in items:
        url = item.get("url") if isinstance(item, dict) else None
        object_name = object_name_from_url(url)
        if not object_name:
            continue
        try:
            minio_client.remove_object(MINIO_BUCKET, object_name)
        except Exception as exc:
            logger.warning("Could not remove attachment %s: %s", object_name, exc)
