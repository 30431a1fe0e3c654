"""JSON boundary between the task pipeline and the AI planner/synthesizer.

Model output is parsed exactly once, here, into :class:`Plan` and
:class:`StepOutput`.  The two parsers fail differently:

- ``parse_plan`` raises :class:`PlanningFailure` for anything it cannot
  turn into a plan with at least one step.  There is no silent fallback.
- ``parse_step_output`` raises :class:`SynthesisFailure` only when the
  reply is not a JSON object at all.  Individual changes that do not
  validate (unknown action, update without content, no path) are dropped
  and returned as rejections so the rest of the step still applies.

No I/O.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from pydantic import TypeAdapter, ValidationError

from autodidact.errors import PlanningFailure, SynthesisFailure
from autodidact.services.task.codec import cap_text
from autodidact.services.task.models import Change, Plan, RepoRef, Step, StepOutput

logger = logging.getLogger(__name__)

_change_adapter: TypeAdapter[Change] = TypeAdapter(Change)

_BRACE_RE = re.compile(r"\{[\s\S]*\}")

PLANNER_SYSTEM_PROMPT = (
    "You are AutoDidact, an autonomous coding agent. Produce concise JSON plans "
    "that break work into actionable steps. The JSON MUST follow "
    '{"summary": string, "steps": [{"id": string, "title": string, '
    '"objective": string, "target_files": [{"path": string}]}]}.'
)

STEP_SYSTEM_PROMPT = (
    "You are AutoDidact executing a coding step. Respond with strict JSON using "
    '{"summary": string, "changes": [{"path": string, "action": '
    '"update"|"create"|"delete", "description": string, "language": string, '
    '"new_content": string}]}. Always include full file content in new_content '
    "for update/create. Omit new_content for delete."
)


# ---------------------------------------------------------------------------
# Raw text -> JSON
# ---------------------------------------------------------------------------


def strip_json_fence(text: str) -> str:
    """Remove a surrounding markdown code fence (```json ... ```), if any."""
    stripped = (text or "").strip()
    if stripped.startswith("```"):
        first_nl = stripped.find("\n")
        stripped = stripped[first_nl + 1:] if first_nl >= 0 else stripped[3:]
        if stripped.rstrip().endswith("```"):
            stripped = stripped.rstrip()[:-3]
    return stripped.strip()


def _load_object(raw: str) -> dict | None:
    """Best-effort JSON object extraction; None if nothing parses."""
    text = strip_json_fence(raw)
    if not text:
        return None
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        # Models sometimes wrap the object in prose.
        match = _BRACE_RE.search(text)
        if not match:
            return None
        try:
            data = json.loads(match.group())
        except (json.JSONDecodeError, TypeError):
            return None
    return data if isinstance(data, dict) else None


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


def parse_plan(raw: str, default_files: list[str] | None = None) -> Plan:
    """Parse planner output into a :class:`Plan`.

    Steps without ``target_files`` fall back to *default_files* (the
    caller-provided paths).

    Raises:
        PlanningFailure: unparseable JSON, wrong shape, or zero steps.
    """
    data = _load_object(raw)
    if data is None:
        raise PlanningFailure(f"Planner returned unparseable output: {(raw or '')[:200]!r}")

    steps = data.get("steps")
    if not isinstance(steps, list) or not steps:
        raise PlanningFailure("Planner returned an empty plan")

    if default_files:
        steps = [
            {**s, "target_files": [{"path": p} for p in default_files]}
            if isinstance(s, dict) and not s.get("target_files") else s
            for s in steps
        ]

    try:
        return Plan.model_validate({"summary": data.get("summary"), "steps": steps})
    except ValidationError as exc:
        raise PlanningFailure(
            f"Planner output does not match the plan shape: {_first_error(exc)}"
        ) from exc


# ---------------------------------------------------------------------------
# Step output
# ---------------------------------------------------------------------------


def parse_step_output(raw: str) -> tuple[StepOutput, list[str]]:
    """Parse synthesizer output.

    Returns ``(output, rejected)`` where *rejected* holds one reason string
    per dropped change.

    Raises:
        SynthesisFailure: the reply is not a JSON object.
    """
    data = _load_object(raw)
    if data is None:
        raise SynthesisFailure(f"Step output is not a JSON object: {(raw or '')[:200]!r}")

    raw_changes = data.get("changes") or []
    if not isinstance(raw_changes, list):
        raise SynthesisFailure("Step output 'changes' is not a list")

    changes: list[Change] = []
    rejected: list[str] = []
    for index, item in enumerate(raw_changes):
        if isinstance(item, dict) and item.get("action") == "delete":
            # Content on a delete is meaningless; drop it rather than reject.
            item = {k: v for k, v in item.items() if k != "new_content"}
        try:
            changes.append(_change_adapter.validate_python(item))
        except ValidationError as exc:
            path = item.get("path") if isinstance(item, dict) else None
            reason = f"change #{index + 1} ({path or 'no path'}) rejected: {_first_error(exc)}"
            logger.warning("Step output %s", reason)
            rejected.append(reason)

    insights = data.get("insights") or []
    if not isinstance(insights, list):
        insights = [str(insights)]

    output = StepOutput(
        summary=str(data.get("summary") or ""),
        changes=changes,
        insights=[str(i) for i in insights],
    )
    return output, rejected


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ()))
    return f"{loc}: {err.get('msg')}" if loc else str(err.get("msg"))


# ---------------------------------------------------------------------------
# Prompt payloads
# ---------------------------------------------------------------------------


def _repo_payload(repo: RepoRef | None) -> dict | None:
    return repo.model_dump() if repo else None


def build_planner_input(
    *,
    instruction: str,
    repo: RepoRef | None,
    files: list[dict],
    knowledge: list[dict],
    hints: str | None,
    char_limit: int,
) -> dict[str, Any]:
    """Planner payload; each file's content is capped at *char_limit*."""
    return {
        "instruction": instruction,
        "repo": _repo_payload(repo),
        "files": [
            {"path": f["path"], "content": cap_text(f.get("content"), char_limit)}
            for f in files
        ],
        "knowledge": knowledge,
        "hints": hints,
    }


def build_step_input(
    *,
    instruction: str,
    step: Step,
    repo: RepoRef | None,
    files: list[dict],
    knowledge: list[dict],
    char_limit: int,
) -> dict[str, Any]:
    """Synthesizer payload for one step; file content capped at *char_limit*."""
    return {
        "instruction": instruction,
        "step": step.model_dump(),
        "repo": _repo_payload(repo),
        "files": [
            {"path": f["path"], "content": cap_text(f.get("content"), char_limit)}
            for f in files
        ],
        "knowledge": knowledge,
    }
