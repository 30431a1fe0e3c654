"""FileOverlay: per-task copy-on-write view of repository files.

The overlay maps path → :class:`FileSnapshot`.  A path is fetched from the
remote at most once per task run; a path that turns out not to exist (or
cannot be fetched) is remembered as missing and will be created if a step
writes it.

Two baselines are kept apart:

* ``committed`` on each snapshot: what is known to be on the branch.  It
  only moves in :meth:`FileOverlay.mark_committed`.
* the current ``content``: what the steps have written so far.

A file touched twice by different steps is therefore dirty only if its
final content differs from the committed one.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Protocol

from autodidact.errors import FileFetchFailure
from autodidact.services.task.codec import bytes_to_text, count_lines, line_delta
from autodidact.services.task.models import (
    Change,
    CreateChange,
    DeleteChange,
    FileSnapshot,
    UpdateChange,
)

logger = logging.getLogger(__name__)


class FetchedFile(Protocol):
    path: str
    content: bytes
    sha: str


Fetcher = Callable[[str], Awaitable["FetchedFile | None"]]
FetchListener = Callable[[str, str, str | None], Awaitable[None]]


class FileOverlay:
    """In-memory workspace snapshot for one task run.

    Args:
        fetcher: async ``path -> FetchedFile | None``; None means no remote
            (every unknown path is treated as new).
        on_fetch: optional async listener ``(path, outcome, detail)`` where
            outcome is ``"fetched" | "missing" | "failed"``.
    """

    def __init__(
        self,
        fetcher: Fetcher | None = None,
        *,
        on_fetch: FetchListener | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._on_fetch = on_fetch
        self._entries: dict[str, FileSnapshot] = {}
        # Paths resolved as absent upstream (or unreachable) are never refetched.
        self._missing: set[str] = set()
        # Upstream-existing paths removed by a step: path -> removed snapshot.
        self._deleted: dict[str, FileSnapshot] = {}
        self.fetch_count = 0
        self.fetch_failures: dict[str, str] = {}

    # ── reads ────────────────────────────────────────────────────────────

    def __contains__(self, path: str) -> bool:
        return path in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, path: str) -> FileSnapshot | None:
        return self._entries.get(path)

    def paths(self) -> list[str]:
        return list(self._entries)

    def content_of(self, path: str) -> str:
        entry = self._entries.get(path)
        return entry.content if entry else ""

    def is_known(self, path: str) -> bool:
        return path in self._entries or path in self._missing

    # ── population ───────────────────────────────────────────────────────

    def seed(self, path: str, content: str, sha: str | None = None) -> FileSnapshot:
        """Register caller-provided content as the committed baseline."""
        snapshot = FileSnapshot(path=path, content=content, sha=sha, committed=content)
        self._entries[path] = snapshot
        self._missing.discard(path)
        return snapshot

    async def ensure(self, path: str) -> FileSnapshot:
        """Return the snapshot for *path*, fetching it on first miss.

        A path absent upstream yields an empty, unstored snapshot with
        ``committed=None``: the file will be created if a step writes it.
        Fetch errors are logged and treated the same way.
        """
        entry = self._entries.get(path)
        if entry is not None:
            return entry
        if path in self._missing or self._fetcher is None:
            self._missing.add(path)
            return FileSnapshot(path=path)

        try:
            fetched = await self._fetcher(path)
        except Exception as exc:
            failure = FileFetchFailure(path, str(exc))
            logger.warning("Overlay fetch failed, treating as new file: %s", failure)
            self._missing.add(path)
            self.fetch_failures[path] = str(exc)
            await self._notify(path, "failed", str(exc))
            return FileSnapshot(path=path)

        if fetched is None:
            self._missing.add(path)
            await self._notify(path, "missing", None)
            return FileSnapshot(path=path)

        self.fetch_count += 1
        text = bytes_to_text(fetched.content)
        snapshot = FileSnapshot(path=path, content=text, sha=fetched.sha or None, committed=text)
        self._entries[path] = snapshot
        await self._notify(path, "fetched", fetched.sha or None)
        return snapshot

    async def _notify(self, path: str, outcome: str, detail: str | None) -> None:
        if self._on_fetch is None:
            return
        try:
            await self._on_fetch(path, outcome, detail)
        except Exception as exc:
            logger.warning("Overlay fetch listener failed (non-fatal): %s", exc)

    # ── mutation ─────────────────────────────────────────────────────────

    def apply(self, change: Change) -> int:
        """Apply one change and return its line delta (new − old).

        Call :meth:`ensure` for the path first if the prior content should
        come from the remote; an unknown path counts as empty.
        """
        if isinstance(change, DeleteChange):
            return self._delete(change.path)
        if isinstance(change, (UpdateChange, CreateChange)):
            return self._write(change.path, change.new_content)
        raise TypeError(f"Unsupported change type: {type(change).__name__}")

    def _write(self, path: str, content: str) -> int:
        entry = self._entries.get(path)
        if entry is not None:
            delta = line_delta(entry.content, content)
            entry.content = content
            return delta

        # Re-creating a path deleted earlier in this run keeps its baseline.
        removed = self._deleted.pop(path, None)
        self._entries[path] = FileSnapshot(
            path=path,
            content=content,
            sha=removed.sha if removed else None,
            committed=removed.committed if removed else None,
        )
        self._missing.discard(path)
        return count_lines(content)

    def _delete(self, path: str) -> int:
        entry = self._entries.pop(path, None)
        self._missing.add(path)
        if entry is None:
            return 0
        if entry.exists_upstream:
            self._deleted[path] = entry
        return -count_lines(entry.content)

    # ── commit support ───────────────────────────────────────────────────

    def dirty_entries(self) -> list[FileSnapshot]:
        """Entries whose content differs from the committed baseline."""
        return [entry for entry in self._entries.values() if entry.dirty]

    def deleted_paths(self) -> list[str]:
        """Upstream paths removed by a step and not re-created since."""
        return list(self._deleted)

    def pending_changes(self) -> list[Change]:
        """Net change-set to commit: dirty writes plus upstream deletions."""
        changes: list[Change] = []
        for entry in self.dirty_entries():
            if entry.exists_upstream:
                changes.append(UpdateChange(path=entry.path, new_content=entry.content))
            else:
                changes.append(CreateChange(path=entry.path, new_content=entry.content))
        for path in self._deleted:
            changes.append(DeleteChange(path=path))
        return changes

    def mark_committed(self, paths: list[str] | None = None) -> None:
        """Record that the current content of *paths* (default: all) landed."""
        targets = set(paths) if paths is not None else None
        for path, entry in self._entries.items():
            if targets is None or path in targets:
                entry.committed = entry.content
        for path in list(self._deleted):
            if targets is None or path in targets:
                del self._deleted[path]
