"""ConflictDetector -- ahead/behind comparison between two refs.

``compare(base, head)`` reports how far *head* is ahead of and behind
*base*, and which files *base* changed that *head* does not have.  Used
before an auto-apply commit as ``compare(branch, basis)``: ``behind_by > 0``
then means the branch gained commits the overlay never saw, and ``files``
are the paths those commits touched.  The detector only reports; it never
merges or blocks.
"""

from __future__ import annotations

import logging
from types import ModuleType
from typing import Any, Iterable

from autodidact.clients import github_client
from autodidact.services.task.models import ChangedFile, ConflictReport, RepoRef

logger = logging.getLogger(__name__)

_MIRRORED_STATUS = {"ahead": "behind", "behind": "ahead"}


class ConflictDetector:
    def __init__(
        self,
        access_token: str,
        repo: RepoRef,
        *,
        client: ModuleType | Any = github_client,
    ) -> None:
        self._token = access_token
        self._repo = repo
        self._client = client

    async def compare(
        self,
        base_ref: str,
        head_ref: str,
        dirty_paths: Iterable[str] | None = None,
    ) -> ConflictReport:
        """Compare *head_ref* against *base_ref*.

        Swapping the arguments swaps ``ahead_by`` and ``behind_by``.
        ``files`` are the paths changed on *base_ref* since it diverged from
        *head_ref*.  *dirty_paths* (paths modified locally) are intersected
        with them to fill ``overlapping_files``.

        Raises:
            GitHubAPIError: if the comparison request fails.
        """
        # GitHub's three-dot compare lists what its head side gained since the
        # merge base, so ask for head...base and mirror the counts back.
        data = await self._client.compare_refs(
            self._token, self._repo.full_name, head_ref, base_ref,
        )
        upstream_status = data.get("status", "identical")
        files = [ChangedFile(**f) for f in data.get("files", [])]
        overlapping: list[str] = []
        if dirty_paths is not None:
            local = set(dirty_paths)
            overlapping = sorted(f.path for f in files if f.path in local)

        report = ConflictReport(
            base_ref=base_ref,
            head_ref=head_ref,
            ahead_by=data.get("behind_by", 0),
            behind_by=data.get("ahead_by", 0),
            status=_MIRRORED_STATUS.get(upstream_status, upstream_status),
            files=files,
            overlapping_files=overlapping,
        )
        logger.debug(
            "compare %s %s...%s: ahead=%d behind=%d files=%d",
            self._repo.full_name, base_ref, head_ref,
            report.ahead_by, report.behind_by, len(files),
        )
        return report


def describe_conflict(report: ConflictReport) -> str:
    """Human-readable warning for a report with ``has_conflicts``."""
    msg = (
        f"Branch {report.base_ref} is {report.behind_by} commit(s) ahead of the "
        f"snapshot basis {report.head_ref[:7]}; concurrent remote edits may be overwritten"
    )
    if report.overlapping_files:
        msg += f" (overlapping: {', '.join(report.overlapping_files)})"
    return msg
