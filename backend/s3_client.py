"""
S3 storage for uploaded specification / offer files.
Set AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY, AWS_REGION, S3_BUCKET.
Without S3_BUCKET uploads are skipped and documents keep only their extracted text.
"""
from __future__ import annotations

import logging
import os
from io import BytesIO

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

S3_BUCKET = os.environ.get("S3_BUCKET", "")
AWS_REGION = os.environ.get("AWS_REGION", "eu-central-1")
UPLOAD_PREFIX = "uploads"


def _client():
    return boto3.client("s3", region_name=AWS_REGION)


def upload_key(document_id: str, filename: str) -> str:
    safe = os.path.basename(filename).replace(" ", "_") or "document"
    return f"{UPLOAD_PREFIX}/{document_id}/{safe}"


def upload_bytes(key: str, body: bytes, content_type: str) -> bool:
    if not S3_BUCKET:
        return False
    try:
        _client().put_object(Bucket=S3_BUCKET, Key=key, Body=body, ContentType=content_type)
        return True
    except (BotoCoreError, ClientError) as e:
        logger.warning("[storage] upload failed key=%s error=%s", key, e)
        return False


def download_bytes(key: str) -> bytes | None:
    if not S3_BUCKET:
        return None
    try:
        buf = BytesIO()
        _client().download_fileobj(S3_BUCKET, key, buf)
        return buf.getvalue()
    except (BotoCoreError, ClientError) as e:
        logger.warning("[storage] download failed key=%s error=%s", key, e)
        return None
