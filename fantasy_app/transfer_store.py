from __future__ import annotations
import fcntl
import hashlib
import os
import re
import threading
import unicodedata
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import config
from .storage import (
    PreconditionFailed,
    json_dump_atomic,
    json_load,
    s3_bucket,
    s3_enabled,
    s3_get_json,
    s3_list_keys,
    s3_put_json,
)
from .transfer_state import (
    ConcurrentUpdateError,
    InvalidStateError,
    TransferState,
    validate_transfer_state,
)

_safe_re = re.compile(r"[^a-z0-9_\-]", re.I)

_locks: Dict[tuple, threading.RLock] = {}
_locks_guard = threading.Lock()


def _state_prefix() -> str:
    return os.getenv("FANTASY_S3_TRANSFER_STATE_PREFIX", "transfer_state").strip().strip("/")


def _log_prefix() -> str:
    return os.getenv("FANTASY_S3_TRANSFER_LOG_PREFIX", "transfers").strip().strip("/")


def _gameweek_prefix() -> str:
    return os.getenv("FANTASY_S3_GAMEWEEK_PREFIX", "gameweeks").strip().strip("/")


def user_slug(user_id: str) -> str:
    raw = str(user_id or "").strip()
    norm = unicodedata.normalize("NFKD", raw)
    ascii_norm = norm.encode("ascii", "ignore").decode("ascii")
    ascii_slug = _safe_re.sub("_", ascii_norm.lower()).strip("_") or "user"
    digest = hashlib.sha1(raw.encode("utf-8")).hexdigest()[:8] if raw else ""
    return f"{ascii_slug}_{digest}" if digest else ascii_slug


def _state_key(user_id: str, gameweek: int) -> str:
    return f"{_state_prefix()}/{user_slug(user_id)}/gw{int(gameweek)}.json"


def _state_path(user_id: str, gameweek: int) -> Path:
    return config.TRANSFER_STATE_DIR / user_slug(user_id) / f"gw{int(gameweek)}.json"


def _log_key(user_id: str) -> str:
    return f"{_log_prefix()}/{user_slug(user_id)}.json"


def _log_path(user_id: str) -> Path:
    return config.TRANSFER_LOG_DIR / f"{user_slug(user_id)}.json"


def record_lock(user_id: str, gameweek: int) -> threading.RLock:
    """Process-local mutex for one (user, gameweek) record."""
    key = (str(user_id), int(gameweek))
    with _locks_guard:
        lock = _locks.get(key)
        if lock is None:
            lock = _locks[key] = threading.RLock()
        return lock


@contextmanager
def _file_lock(user_id: str, gameweek: int):
    """Exclusive flock on a sidecar file, shared by every worker process on the host."""
    path = _state_path(user_id, gameweek).with_suffix(".lock")
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a") as fh:
        fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)


def _read_document(user_id: str, gameweek: int):
    """Return ``(document, etag)``; S3 is authoritative when configured."""
    if s3_enabled():
        data, etag = s3_get_json(s3_bucket(), _state_key(user_id, gameweek))
        return (data if isinstance(data, dict) else None), etag
    data = json_load(_state_path(user_id, gameweek))
    return (data if isinstance(data, dict) else None), None


def load_transfer_state(user_id: str, gameweek: int) -> Optional[TransferState]:
    """Load the stored record for ``user_id`` in ``gameweek`` or ``None``."""
    doc, _ = _read_document(user_id, gameweek)
    if not doc:
        return None
    payload = doc.get("transferState", doc)
    return TransferState.from_dict(payload)


def save_transfer_state(
    user_id: str,
    gameweek: int,
    state: TransferState,
    expected_version: Optional[int] = None,
) -> TransferState:
    """Persist ``state`` only if the stored version still equals ``expected_version``.

    ``expected_version=None`` means the record must not exist yet. Returns the
    state as stored, with its version bumped.
    """
    if state.last_gameweek_processed != int(gameweek):
        raise InvalidStateError(
            f"refusing to store GW{state.last_gameweek_processed} state under GW{gameweek}"
        )
    validate_transfer_state(state)

    new_version = (expected_version or 0) + 1
    stored = TransferState.from_dict({**state.to_dict(), "version": new_version})
    doc = {
        "userId": str(user_id),
        "gameweek": int(gameweek),
        "transferState": stored.to_dict(),
        "updatedAt": datetime.now(timezone.utc).isoformat(),
    }

    with record_lock(user_id, gameweek), _file_lock(user_id, gameweek):
        current_doc, etag = _read_document(user_id, gameweek)
        current_version = None
        if current_doc:
            current_version = int(current_doc.get("transferState", {}).get("version", 0))
        if current_version != expected_version:
            raise ConcurrentUpdateError(
                f"{user_id} GW{gameweek}: expected version {expected_version}, found {current_version}"
            )

        if s3_enabled():
            try:
                s3_put_json(
                    s3_bucket(),
                    _state_key(user_id, gameweek),
                    doc,
                    if_match=etag,
                    if_none_match=current_doc is None,
                )
            except PreconditionFailed as e:
                raise ConcurrentUpdateError(f"{user_id} GW{gameweek}: {e}") from e
        json_dump_atomic(_state_path(user_id, gameweek), doc)

    return stored


def list_users(gameweek: int) -> List[str]:
    """User ids that have a stored record for ``gameweek``."""
    suffix = f"/gw{int(gameweek)}.json"
    users: List[str] = []
    if s3_enabled():
        bucket = s3_bucket()
        for key in s3_list_keys(bucket, _state_prefix() + "/"):
            if not key.endswith(suffix):
                continue
            data, _ = s3_get_json(bucket, key)
            if isinstance(data, dict) and data.get("userId"):
                users.append(str(data["userId"]))
        return sorted(users)

    root = config.TRANSFER_STATE_DIR
    if not root.exists():
        return []
    for p in root.glob(f"*/gw{int(gameweek)}.json"):
        data = json_load(p)
        if isinstance(data, dict) and data.get("userId"):
            users.append(str(data["userId"]))
    return sorted(users)


def latest_gameweek_before(user_id: str, gameweek: int) -> Optional[int]:
    """Most recent gameweek before ``gameweek`` with a stored record."""
    for gw in range(int(gameweek) - 1, config.FIRST_GAMEWEEK - 1, -1):
        doc, _ = _read_document(user_id, gw)
        if doc:
            return gw
    return None


# -------- gameweek deadlines --------
def _gameweek_key(gameweek: int) -> str:
    return f"{_gameweek_prefix()}/gw{int(gameweek)}.json"


def _gameweek_path(gameweek: int) -> Path:
    return config.GAMEWEEK_DIR / f"gw{int(gameweek)}.json"


def is_gameweek_closed(gameweek: int) -> bool:
    """True once the deadline job has closed ``gameweek``."""
    if s3_enabled():
        data, _ = s3_get_json(s3_bucket(), _gameweek_key(gameweek))
    else:
        data = json_load(_gameweek_path(gameweek))
    return isinstance(data, dict) and bool(data.get("closed"))


def mark_gameweek_closed(gameweek: int) -> bool:
    """Write the closed marker for ``gameweek``; False if it was already there."""
    doc = {
        "gameweek": int(gameweek),
        "closed": True,
        "closedAt": datetime.now(timezone.utc).isoformat(),
    }
    with record_lock("__gameweek__", gameweek):
        if is_gameweek_closed(gameweek):
            return False
        if s3_enabled():
            try:
                s3_put_json(s3_bucket(), _gameweek_key(gameweek), doc, if_none_match=True)
            except PreconditionFailed:
                return False
        json_dump_atomic(_gameweek_path(gameweek), doc)
    return True


# -------- transfer history --------
def load_transfer_log(user_id: str) -> List[Dict[str, Any]]:
    if s3_enabled():
        data, _ = s3_get_json(s3_bucket(), _log_key(user_id))
        return data if isinstance(data, list) else []
    data = json_load(_log_path(user_id))
    return data if isinstance(data, list) else []


def append_transfer(user_id: str, event: Dict[str, Any]) -> None:
    with record_lock(user_id, 0):
        log = load_transfer_log(user_id)
        log.append(event)
        if s3_enabled():
            s3_put_json(s3_bucket(), _log_key(user_id), log)
        json_dump_atomic(_log_path(user_id), log)
