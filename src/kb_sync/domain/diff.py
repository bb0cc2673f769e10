"""Classify discovered URLs against the URL ledger.

Sitemaps rarely carry trustworthy modification timestamps, so classification
happens in two steps: ``diff`` decides what to fetch and what to soft-delete,
then ``resolve_change`` settles updated versus unchanged once the fetched
content hash is known.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from .model import LedgerEntry, UrlStatus


class ChangeKind(str, Enum):
    NEW = "new"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass(slots=True)
class DiffResult:
    """Outcome of comparing a discovery run with the ledger.

    ``candidates`` are previously known URLs that must be fetched before we
    know whether they changed. ``revived`` URLs were soft-deleted and showed
    up again; they are fetched and counted as new.
    """

    discovered: list[str] = field(default_factory=list)
    new: list[str] = field(default_factory=list)
    revived: list[str] = field(default_factory=list)
    candidates: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    previous_hashes: dict[str, str | None] = field(default_factory=dict)

    @property
    def new_count(self) -> int:
        return len(self.new) + len(self.revived)

    @property
    def to_fetch(self) -> list[str]:
        """URLs to dispatch, in discovery order."""
        queued = set(self.new) | set(self.revived) | set(self.candidates)
        return [url for url in self.discovered if url in queued]

    def change_kind(self, url: str, content_hash: str) -> ChangeKind:
        if url in self.previous_hashes:
            return resolve_change(self.previous_hashes[url], content_hash)
        return ChangeKind.NEW


def diff(discovered: Iterable[str], ledger: Iterable[LedgerEntry]) -> DiffResult:
    """Compare discovered URLs with existing ledger entries."""
    ordered: list[str] = []
    seen: set[str] = set()
    for url in discovered:
        if url and url not in seen:
            seen.add(url)
            ordered.append(url)

    by_url = {entry.url: entry for entry in ledger}
    result = DiffResult(discovered=ordered)

    for url in ordered:
        entry = by_url.get(url)
        if entry is None:
            result.new.append(url)
        elif entry.status == UrlStatus.DELETED:
            result.revived.append(url)
        else:
            result.candidates.append(url)
            result.previous_hashes[url] = entry.content_hash

    for url, entry in by_url.items():
        if url not in seen and entry.status != UrlStatus.DELETED:
            result.deleted.append(url)
    result.deleted.sort()
    return result


def resolve_change(previous_hash: str | None, content_hash: str) -> ChangeKind:
    """Settle a fetched candidate as updated or unchanged."""
    if previous_hash is not None and previous_hash == content_hash:
        return ChangeKind.UNCHANGED
    return ChangeKind.UPDATED
