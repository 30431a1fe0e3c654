"""LLM-backed planner and step synthesizer.

The orchestrator treats both as black boxes: an async callable taking the
JSON payload built in :mod:`contracts` and returning the model's raw text.
Parsing happens back in :mod:`contracts`, never here.
"""

from __future__ import annotations

import json
import logging
from typing import Awaitable, Callable

from autodidact.clients import llm_client
from autodidact.config import get_model_for_role, settings
from autodidact.services.task.contracts import PLANNER_SYSTEM_PROMPT, STEP_SYSTEM_PROMPT

logger = logging.getLogger(__name__)

# (payload) -> raw model text
Planner = Callable[[dict], Awaitable[str]]
StepSynthesizer = Callable[[dict], Awaitable[str]]


class _LLMRole:
    role = ""
    system_prompt = ""

    def __init__(self, *, model: str | None = None, max_tokens: int | None = None) -> None:
        self.model = model or get_model_for_role(self.role)
        self.max_tokens = max_tokens or settings.LLM_MAX_TOKENS

    async def __call__(self, payload: dict) -> str:
        result = await llm_client.chat(
            model=self.model,
            system_prompt=self.system_prompt,
            messages=[{"role": "user", "content": json.dumps(payload)}],
            max_tokens=self.max_tokens,
        )
        usage = result.get("usage", {})
        logger.info(
            "%s call on %s: %d in / %d out tokens",
            self.role, self.model,
            usage.get("input_tokens", 0), usage.get("output_tokens", 0),
        )
        return result["text"]


class LLMPlanner(_LLMRole):
    role = "planner"
    system_prompt = PLANNER_SYSTEM_PROMPT


class LLMStepSynthesizer(_LLMRole):
    role = "synthesizer"
    system_prompt = STEP_SYSTEM_PROMPT
