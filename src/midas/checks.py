"""Per-project check statuses (pending/completed/skipped), keyed by check id."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from midas import store
from midas.documents import CHECK_STATUSES, CHECKS_DOCUMENT, CheckStatus, CheckStatusMap

log = logging.getLogger(__name__)


def _checks_path(project_dir: str | os.PathLike[str]) -> Path:
    return store.document_path(project_dir, CHECKS_DOCUMENT)


def all_check_statuses(project_dir: str | os.PathLike[str]) -> CheckStatusMap:
    return store.get(_checks_path(project_dir), CHECKS_DOCUMENT).payload


def get_check_status(project_dir: str | os.PathLike[str], key: str) -> CheckStatus | None:
    return all_check_statuses(project_dir).get(key)


def update_check_status(
    project_dir: str | os.PathLike[str],
    key: str,
    status: str,
    skip_reason: str | None = None,
) -> store.WriteResult:
    """Set the status of one check. Raises ``ValueError`` for unknown statuses.

    ``skip_reason`` is only kept for ``skipped`` and is stored verbatim.
    """
    if status not in CHECK_STATUSES:
        msg = f"Unknown check status: {status}. Supported: {', '.join(CHECK_STATUSES)}"
        raise ValueError(msg)
    if not key:
        raise ValueError("Check key must not be empty")

    entry = CheckStatus(
        status=status,
        updated_at=store.utcnow(),
        skip_reason=skip_reason if status == "skipped" else None,
    )

    def mutate(checks: CheckStatusMap) -> CheckStatusMap:
        checks[key] = entry
        return checks

    result = store.put(_checks_path(project_dir), CHECKS_DOCUMENT, mutate)
    if result.success:
        log.debug("Check %s -> %s (v%d)", key, status, result.version)
    else:
        log.warning("Could not update check %s: %s", key, result.error)
    return result


def reset_check_statuses(project_dir: str | os.PathLike[str]) -> store.WriteResult:
    """Clear every check status.

    Keys another writer adds or changes while the reset is in flight are
    kept; every key it left untouched is removed.
    """

    def mutate(checks: CheckStatusMap) -> CheckStatusMap:
        return {}

    return store.put(_checks_path(project_dir), CHECKS_DOCUMENT, mutate)


def check_summary(project_dir: str | os.PathLike[str]) -> dict[str, int]:
    """Count of checks per status, every status present."""
    counts = dict.fromkeys(CHECK_STATUSES, 0)
    for check in all_check_statuses(project_dir).values():
        counts[check.status] += 1
    return counts
