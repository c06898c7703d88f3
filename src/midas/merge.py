"""Merge primitives used when a commit finds a newer document on disk.

``local`` is always the committing writer's candidate, ``remote`` the payload
freshly read from disk, and ``base`` the payload the candidate was derived
from. Collections never lose an entry present on either side; keyed mappings
also honour a deletion made on one side while the other left the key alone.
"""

from __future__ import annotations

from collections.abc import Callable, Hashable, Iterable, Mapping
from typing import TypeVar

T = TypeVar("T")
V = TypeVar("V")


def pick(local: T, remote: T, base: T) -> T:
    """Three-way scalar pick: the writer's value unless it left the base untouched."""
    if local == base:
        return remote
    return local


def prefer_local(local: T, remote: T) -> T:
    return local


def newer_by(stamp: Callable[[T], str | None]) -> Callable[[T, T], T]:
    """Resolve a same-identity pair by wall-clock stamp; ties go to ``local``."""

    def resolve(local: T, remote: T) -> T:
        local_stamp = stamp(local) or ""
        remote_stamp = stamp(remote) or ""
        if remote_stamp > local_stamp:
            return remote
        return local

    return resolve


def union_by_key(
    local: Iterable[T],
    remote: Iterable[T],
    *,
    key: Callable[[T], Hashable],
    order: Callable[[T], str],
    newest_first: bool,
    limit: int | None = None,
    resolve: Callable[[T, T], T] = prefer_local,
) -> list[T]:
    """Union two ordered collections by identity.

    Entries present on both sides are reconciled with ``resolve``. The result
    is sorted by ``order`` (ISO-8601 stamps sort lexically) and truncated to
    ``limit`` keeping the most recent entries.
    """
    merged: dict[Hashable, T] = {}
    for item in remote:
        merged[key(item)] = item
    for item in local:
        k = key(item)
        existing = merged.get(k)
        merged[k] = item if existing is None else resolve(item, existing)

    items = sorted(merged.values(), key=order, reverse=newest_first)
    if limit is not None and len(items) > limit:
        items = items[:limit] if newest_first else items[len(items) - limit :]
    return items


def merge_mapping(
    local: Mapping[str, V],
    remote: Mapping[str, V],
    base: Mapping[str, V],
    *,
    resolve: Callable[[V, V], V] = prefer_local,
) -> dict[str, V]:
    """Per-key three-way merge.

    A key added on only one side is kept. A key one side deleted stays deleted
    unless the other side changed it. A key present on both sides keeps
    whichever side changed it relative to ``base``; when both changed it,
    ``resolve`` decides.
    """
    merged: dict[str, V] = {}
    for k in {*local, *remote}:
        if k not in remote:
            if k in base and base[k] == local[k]:
                continue
            merged[k] = local[k]
            continue
        other = remote[k]
        if k not in local:
            if k in base and base[k] == other:
                continue
            merged[k] = other
            continue
        value = local[k]
        if value == other:
            merged[k] = value
        elif k in base and base[k] == value:
            merged[k] = other
        elif k in base and base[k] == other:
            merged[k] = value
        else:
            merged[k] = resolve(value, other)
    return dict(sorted(merged.items()))
