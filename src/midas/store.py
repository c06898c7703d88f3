"""Versioned, file-backed document store for per-project state.

Every document lives in its own JSON file under the project's state directory
and carries a monotonically increasing ``version``. All reads and writes of a
document go through :func:`get` and :func:`put`; no other module opens these
files.

Writes are lock-free. A commit writes a temporary file in the target
directory, then claims the next version by exclusively creating a per-version
ticket (``.<file>.v<N>.claim``). Only the ticket holder may rename onto the
target, and only while the target still holds the version it read, so two
writers can never both commit the same version. A writer that loses the claim
or finds a newer version merges its candidate field-by-field against the
fresh payload (see ``midas.merge``) and retries, up to ``MAX_MERGE_ATTEMPTS``
merge rounds. Tickets are never waited on indefinitely: one older than
``CLAIM_TIMEOUT_SECONDS`` is treated as abandoned and removed.

Nothing here raises for I/O or decode conditions:

- ``get`` returns the type default at version 0 for missing or corrupt files.
- ``put`` returns a ``WriteResult``; ``success=False`` means the on-disk
  document was left unchanged.
"""

from __future__ import annotations

import contextlib
import copy
import json
import logging
import os
import random
import socket
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Generic, TypeVar

from midas.paths import state_dir

log = logging.getLogger(__name__)

T = TypeVar("T")

MAX_MERGE_ATTEMPTS = 3
RETRY_JITTER_SECONDS = 0.005
CLAIM_TIMEOUT_SECONDS = 2.0
CLAIM_POLL_SECONDS = 0.001


def utcnow() -> str:
    """ISO 8601 UTC timestamp with microseconds; sorts lexically."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse a stored ISO 8601 timestamp, returning None when invalid."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DocumentType(Generic[T]):
    """How one kind of document is defaulted, decoded, encoded and merged.

    ``decode`` must be total: it receives the raw payload object and returns a
    valid ``T``, replacing invalid fields with defaults. ``merge`` receives
    ``(local, remote, base)``.
    """

    name: str
    filename: str
    default: Callable[[], T]
    decode: Callable[[dict[str, Any]], T]
    encode: Callable[[T], dict[str, Any]]
    merge: Callable[[T, T, T], T]


@dataclass(frozen=True)
class Document(Generic[T]):
    payload: T
    version: int


@dataclass(frozen=True)
class WriteResult:
    """Outcome of a ``put``.

    ``version`` is the committed version on success, otherwise the last
    version observed on disk.
    """

    success: bool
    version: int
    conflict_detected: bool = False
    merges: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "version": self.version,
            "conflict_detected": self.conflict_detected,
            "merges": self.merges,
            "error": self.error,
        }


class _CorruptDocument(ValueError):
    pass


def document_path(project_dir: str | os.PathLike[str], doc_type: DocumentType[Any]) -> Path:
    """Return the well-known path of a document inside a project."""
    return state_dir(project_dir) / doc_type.filename


def _writer_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


# ---------------------------------------------------------------------------
# Read path
# ---------------------------------------------------------------------------


def _reject_constant(token: str) -> Any:
    raise _CorruptDocument(f"non-finite numeric token {token!r}")


def _decode_record(raw: bytes) -> tuple[dict[str, Any], int]:
    """Split a raw file into (payload, version), raising on any malformation."""
    text = raw.decode("utf-8")
    if not text.strip():
        raise _CorruptDocument("empty document")
    record = json.loads(text, parse_constant=_reject_constant)
    if not isinstance(record, dict):
        raise _CorruptDocument("top-level value is not an object")
    version = record.get("version")
    if isinstance(version, bool) or not isinstance(version, int) or version < 0:
        raise _CorruptDocument(f"invalid version {version!r}")
    payload = record.get("payload")
    if not isinstance(payload, dict):
        raise _CorruptDocument("payload is not an object")
    return payload, version


def _default(doc_type: DocumentType[T]) -> Document[T]:
    return Document(payload=doc_type.default(), version=0)


def get(path: str | os.PathLike[str], doc_type: DocumentType[T]) -> Document[T]:
    """Read a document. Total: missing or malformed content yields the default."""
    target = Path(path)
    try:
        raw = target.read_bytes()
    except FileNotFoundError:
        return _default(doc_type)
    except OSError:
        log.debug(
            "Unreadable %s document at %s; using defaults", doc_type.name, target, exc_info=True
        )
        return _default(doc_type)

    try:
        payload, version = _decode_record(raw)
        return Document(payload=doc_type.decode(payload), version=version)
    except Exception:
        log.debug("Corrupt %s document at %s; using defaults", doc_type.name, target, exc_info=True)
        return _default(doc_type)


# ---------------------------------------------------------------------------
# Write path
# ---------------------------------------------------------------------------


def _encode_record(doc_type: DocumentType[T], payload: T, version: int) -> bytes:
    record = {
        "version": version,
        "updated_at": utcnow(),
        "writer": _writer_id(),
        "payload": doc_type.encode(payload),
    }
    return json.dumps(record, indent=2, ensure_ascii=False, allow_nan=False).encode("utf-8")


def _discard(tmp: Path) -> None:
    with contextlib.suppress(OSError):
        tmp.unlink()


def _write_temp(target: Path, data: bytes) -> Path | None:
    """Write ``data`` to a fresh temporary file beside ``target``.

    The directory is (re)created on each attempt; one retry is made.
    """
    for attempt in (1, 2):
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
        except OSError:
            log.debug("Temp file for %s failed (attempt %d)", target, attempt, exc_info=True)
            continue
        tmp = Path(name)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
        except OSError:
            log.debug("Temp write for %s failed (attempt %d)", target, attempt, exc_info=True)
            _discard(tmp)
            continue
        return tmp
    log.warning("Could not write a temporary file for %s; state unchanged", target)
    return None


def _replace(tmp: Path, target: Path, data: bytes) -> bool:
    """Rename ``tmp`` over ``target``; on failure recreate the directory and retry once."""
    try:
        os.replace(tmp, target)
        return True
    except OSError:
        log.debug("Rename onto %s failed; retrying", target, exc_info=True)
        _discard(tmp)

    retry_tmp = _write_temp(target, data)
    if retry_tmp is None:
        return False
    try:
        os.replace(retry_tmp, target)
        return True
    except OSError:
        log.warning("Rename onto %s failed twice; state unchanged", target, exc_info=True)
        _discard(retry_tmp)
        return False


def _claim_path(target: Path, version: int) -> Path:
    return target.with_name(f".{target.name}.v{version}.claim")


def _claim(target: Path, version: int) -> bool:
    """Exclusively create the ticket for ``version``; False if another writer holds it."""
    try:
        fd = os.open(_claim_path(target, version), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        return False
    os.close(fd)
    return True


def _release(target: Path, version: int) -> None:
    _discard(_claim_path(target, version))


def _await_claim(
    target: Path, doc_type: DocumentType[T], observed: int, version: int
) -> Document[T]:
    """Wait for the holder of ``version``'s ticket to commit or give it up.

    A ticket older than ``CLAIM_TIMEOUT_SECONDS`` belongs to a writer that
    died before renaming; it is removed so the version can be claimed again.
    """
    claim = _claim_path(target, version)
    while True:
        fresh = get(target, doc_type)
        if fresh.version != observed:
            return fresh
        try:
            age = time.time() - claim.stat().st_mtime
        except FileNotFoundError:
            return fresh
        except OSError:
            log.debug("Cannot stat claim %s", claim, exc_info=True)
            return fresh
        if age > CLAIM_TIMEOUT_SECONDS:
            log.warning("Removing abandoned claim %s", claim)
            _discard(claim)
            return fresh
        time.sleep(CLAIM_POLL_SECONDS)


def put(
    path: str | os.PathLike[str],
    doc_type: DocumentType[T],
    mutator: Callable[[T], T],
    expected_version: int | None = None,
    *,
    max_merges: int = MAX_MERGE_ATTEMPTS,
) -> WriteResult:
    """Apply ``mutator`` to the current payload and commit the result.

    ``expected_version`` is the version the caller based its change on; when
    omitted, the version read here is used. A mismatch with the on-disk
    version at any point before the rename is resolved by merging, never by
    failing or overwriting.

    Version ``N`` is committed only by the writer that created its claim
    ticket, and only while the target still holds ``N - 1``; every other
    writer merges against whatever lands and tries ``N + 1``.
    """
    target = Path(path)
    current = get(target, doc_type)
    base = current.payload
    try:
        candidate = mutator(copy.deepcopy(base))
    except Exception as exc:
        log.warning("Update of %s document raised; state unchanged", doc_type.name, exc_info=True)
        return WriteResult(success=False, version=current.version, error=f"mutator failed: {exc}")
    if candidate is None:
        log.warning("Update of %s document returned nothing; state unchanged", doc_type.name)
        return WriteResult(False, current.version, error="mutator returned None")

    observed = current.version
    conflict = False
    merges = 0

    if expected_version is not None and expected_version != observed:
        conflict = True
        log.debug(
            "Stale %s write: expected v%d, found v%d; merging",
            doc_type.name,
            expected_version,
            observed,
        )
        try:
            candidate = doc_type.merge(candidate, current.payload, base)
        except Exception as exc:
            log.warning("Merge of %s document raised", doc_type.name, exc_info=True)
            return WriteResult(False, observed, conflict, merges, error=f"merge failed: {exc}")

    while True:
        new_version = observed + 1
        try:
            data = _encode_record(doc_type, candidate, new_version)
        except Exception as exc:
            log.warning("Could not serialize %s document", doc_type.name, exc_info=True)
            return WriteResult(False, observed, conflict, merges, error=f"encode failed: {exc}")

        tmp = _write_temp(target, data)
        if tmp is None:
            return WriteResult(False, observed, conflict, merges, error="temp write failed")

        try:
            claimed = _claim(target, new_version)
        except OSError:
            log.warning(
                "Could not claim v%d of %s; state unchanged", new_version, target, exc_info=True
            )
            _discard(tmp)
            return WriteResult(False, observed, conflict, merges, error="claim failed")

        if claimed:
            fresh = get(target, doc_type)
            if fresh.version == observed:
                if _replace(tmp, target, data):
                    _release(target, observed)
                    return WriteResult(True, new_version, conflict, merges)
                _release(target, new_version)
                return WriteResult(False, observed, conflict, merges, error="rename failed")
            # Ticket left behind by a finished writer; the target has moved on.
            _release(target, new_version)
        else:
            fresh = _await_claim(target, doc_type, observed, new_version)
        _discard(tmp)

        if fresh.version == observed:
            continue

        conflict = True
        if merges >= max_merges:
            log.warning(
                "Gave up committing %s after %d merges (disk at v%d); state unchanged",
                doc_type.name,
                merges,
                fresh.version,
            )
            return WriteResult(
                False, fresh.version, conflict, merges, error="version kept advancing"
            )

        log.debug(
            "Version conflict on %s: based on v%d, disk at v%d; merging",
            doc_type.name,
            observed,
            fresh.version,
        )
        try:
            candidate = doc_type.merge(candidate, fresh.payload, base)
        except Exception as exc:
            log.warning("Merge of %s document raised", doc_type.name, exc_info=True)
            return WriteResult(False, fresh.version, conflict, merges, error=f"merge failed: {exc}")
        base = fresh.payload
        observed = fresh.version
        merges += 1
        time.sleep(random.uniform(0, RETRY_JITTER_SECONDS))
