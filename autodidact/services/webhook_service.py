"""Webhook service -- turn repository events into auto-applying tasks.

The payload arrives here already signature-checked.  Supported triggers:

- ``push``: scan the pushed files (added + modified, capped).
- ``issues`` / ``opened``: analyse the new issue.
- ``pull_request`` / ``opened`` or ``synchronize``: review the PR.

Anything else is ignored.  Tasks run with ``GITHUB_SERVICE_TOKEN``.
"""

import logging

from autodidact.config import settings
from autodidact.services import task_service
from autodidact.services.task.models import InputFile, RepoRef, TaskRequest

logger = logging.getLogger(__name__)

_PR_ACTIONS = frozenset({"opened", "synchronize"})


def _repo_from_payload(payload: dict) -> RepoRef | None:
    repository = payload.get("repository") or {}
    full_name = repository.get("full_name") or ""
    owner, _, name = full_name.partition("/")
    if not owner or not name:
        return None
    return RepoRef(owner=owner, name=name, branch=repository.get("default_branch") or "main")


def translate_event(event_type: str, payload: dict) -> TaskRequest | None:
    """Build the TaskRequest for an event, or None if it is not a trigger."""
    repo = _repo_from_payload(payload)
    if repo is None:
        return None
    action = payload.get("action")
    trigger: dict = {"source": "webhook", "event": event_type, "action": action}

    if event_type == "push":
        commits = payload.get("commits") or []
        messages = ", ".join(c.get("message", "") for c in commits)
        instruction = (
            f"Analyze recent push ({len(commits)} commit(s): {messages[:200]}). "
            "Scan for TODO/FIXME comments and code quality issues. Fix any issues found."
        )
        paths: list[str] = []
        for commit in commits:
            for path in [*(commit.get("added") or []), *(commit.get("modified") or [])]:
                if path not in paths:
                    paths.append(path)
        files = [InputFile(path=p) for p in paths[: settings.WEBHOOK_MAX_FILES]]

    elif event_type == "issues" and action == "opened":
        issue = payload.get("issue") or {}
        body = (issue.get("body") or "")[:500]
        instruction = (
            f'Analyze and respond to issue #{issue.get("number")}: "{issue.get("title")}". '
            f"{body}. Provide technical analysis and suggest potential fixes if applicable."
        )
        files = []
        trigger["issue"] = {
            "number": issue.get("number"),
            "title": issue.get("title"),
            "url": issue.get("html_url"),
        }

    elif event_type == "pull_request" and action in _PR_ACTIONS:
        pr = payload.get("pull_request") or {}
        instruction = (
            f'Review pull request #{pr.get("number")}: "{pr.get("title")}". '
            "Analyze code changes, check for quality issues, suggest improvements, "
            "and provide constructive feedback."
        )
        files = []
        trigger["pull_request"] = {
            "number": pr.get("number"),
            "title": pr.get("title"),
            "url": pr.get("html_url"),
            "base_branch": (pr.get("base") or {}).get("ref"),
            "head_branch": (pr.get("head") or {}).get("ref"),
        }

    else:
        return None

    return TaskRequest(
        instruction=instruction,
        repo=repo,
        files=files,
        auto_apply=True,
        trigger=trigger,
    )


async def handle_event(event_type: str, payload: dict) -> dict:
    """Create and start a task for a trigger event.

    Returns ``{"status": "ignored"}`` or ``{"status": "accepted", "task_id": ...}``.
    """
    request = translate_event(event_type, payload)
    if request is None:
        logger.info("Ignoring webhook event %s/%s", event_type, payload.get("action"))
        return {"status": "ignored", "event": event_type}

    task = await task_service.create_task(request)
    await task_service.start_task(task.id, settings.GITHUB_SERVICE_TOKEN or None)
    logger.info("Webhook %s started task %s on %s", event_type, task.id, request.repo.full_name)
    return {"status": "accepted", "event": event_type, "task_id": str(task.id)}
