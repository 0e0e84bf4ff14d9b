from __future__ import annotations
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError


class StorageError(RuntimeError):
    """Document store rejected a read or write."""


class PreconditionFailed(StorageError):
    """Conditional write lost against a newer object."""


# ======================
#        S3 I/O
# ======================
def s3_bucket() -> Optional[str]:
    return os.getenv("FANTASY_S3_BUCKET") or os.getenv("DRAFT_S3_BUCKET")


def s3_enabled() -> bool:
    return bool(s3_bucket())


_client = None


def s3_client():
    global _client
    if _client is None:
        cfg = BotoConfig(
            retries={"max_attempts": 3, "mode": "standard"},
            connect_timeout=5,
            read_timeout=8,
        )
        region = os.getenv("AWS_REGION") or os.getenv("AWS_DEFAULT_REGION") or "us-east-1"
        _client = boto3.client("s3", region_name=region, config=cfg)
    return _client


def _error_code(exc: Exception) -> Optional[str]:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code")
    return None


def s3_get_json(bucket: str, key: str) -> Tuple[Optional[Any], Optional[str]]:
    """Return ``(payload, etag)`` or ``(None, None)`` when the object is missing."""
    try:
        obj = s3_client().get_object(Bucket=bucket, Key=key)
        body = obj["Body"].read()
        return json.loads(body.decode("utf-8")), obj.get("ETag")
    except ClientError as e:
        # Missing objects are a normal scenario – treat them as cache misses.
        if _error_code(e) in {"NoSuchKey", "404"}:
            return None, None
        print(f"[TRANSFERS:S3] get_object failed: s3://{bucket}/{key} -> {e}")
        raise StorageError(f"s3://{bucket}/{key}: {e}") from e
    except BotoCoreError as e:
        print(f"[TRANSFERS:S3] get_object failed: s3://{bucket}/{key} -> {e}")
        raise StorageError(f"s3://{bucket}/{key}: {e}") from e


def s3_put_json(
    bucket: str,
    key: str,
    data: Any,
    if_match: Optional[str] = None,
    if_none_match: bool = False,
) -> str:
    """Write JSON to S3 and return the new ETag.

    ``if_match`` / ``if_none_match`` turn the write into a compare-and-set:
    S3 answers ``PreconditionFailed`` when another writer got there first.
    """
    body = json.dumps(data, ensure_ascii=False, indent=2).encode("utf-8")
    kwargs = {
        "Bucket": bucket,
        "Key": key,
        "Body": body,
        "ContentType": "application/json; charset=utf-8",
        "CacheControl": "no-cache",
    }
    if if_match:
        kwargs["IfMatch"] = if_match
    elif if_none_match:
        kwargs["IfNoneMatch"] = "*"
    try:
        resp = s3_client().put_object(**kwargs)
    except ClientError as e:
        if _error_code(e) in {"PreconditionFailed", "ConditionalRequestConflict", "412"}:
            raise PreconditionFailed(f"s3://{bucket}/{key} changed concurrently") from e
        print(f"[TRANSFERS:S3] put_object failed: s3://{bucket}/{key} -> {e}")
        raise StorageError(f"s3://{bucket}/{key}: {e}") from e
    except BotoCoreError as e:
        print(f"[TRANSFERS:S3] put_object failed: s3://{bucket}/{key} -> {e}")
        raise StorageError(f"s3://{bucket}/{key}: {e}") from e
    return resp.get("ETag", "")


def s3_list_keys(bucket: str, prefix: str) -> list:
    keys = []
    paginator = s3_client().get_paginator("list_objects_v2")
    try:
        for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
            for item in page.get("Contents", []):
                keys.append(item["Key"])
    except (ClientError, BotoCoreError) as e:
        print(f"[TRANSFERS:S3] list_objects failed: s3://{bucket}/{prefix} -> {e}")
        raise StorageError(f"s3://{bucket}/{prefix}: {e}") from e
    return keys


# -------- JSON I/O (локально) --------
def json_load(p: Path) -> Any:
    try:
        with p.open("r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except json.JSONDecodeError as e:
        print(f"[TRANSFERS] corrupted JSON at {p}: {e}")
        raise StorageError(f"corrupted JSON at {p}") from e


def json_dump_atomic(p: Path, data: Any) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=p.stem + "_", suffix=".json", dir=str(p.parent))
    os.close(fd)
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2)
    os.replace(tmp, p)
