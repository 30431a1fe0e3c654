"""LLM client -- multi-provider chat wrapper (Anthropic, OpenAI, Ollama).

Every provider call returns ``{"text": str, "usage": {...}}``.  Transient
failures (timeouts, transport errors, 429/5xx) are retried with
exponential backoff.  This retry layer is for the model providers only;
the repository API client never retries.
"""

import asyncio
import logging

import httpx

from autodidact.config import settings

logger = logging.getLogger(__name__)

# ── Shared HTTP client (connection pooling) ─────────────────────────────────

_client: httpx.AsyncClient | None = None


def _get_client() -> httpx.AsyncClient:
    """Return (or create) the shared httpx client for LLM API calls."""
    global _client
    if _client is None:
        _client = httpx.AsyncClient(timeout=300.0)
    return _client


async def close_client() -> None:
    """Close the shared LLM HTTP client.  Called during app shutdown."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


class LLMError(Exception):
    """Provider returned an error or an unusable response."""

    def __init__(self, provider: str, status: int, message: str):
        super().__init__(f"{provider} API {status}: {message}")
        self.provider = provider
        self.status = status


# ---------------------------------------------------------------------------
# Retry configuration
# ---------------------------------------------------------------------------

MAX_RETRIES = 4
RETRY_BACKOFF_BASE = 2.0  # seconds; exponential: 2, 4, 8, 16
_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 529})


class _RetryableStatus(Exception):
    def __init__(self, error: LLMError, retry_after: str | None):
        super().__init__(str(error))
        self.error = error
        self.retry_after = retry_after


def _compute_wait(retry_after: str | None, attempt: int, backoff_base: float) -> float:
    """Seconds to wait before the next attempt.

    Honours a ``retry-after`` header when present, otherwise exponential
    backoff capped at 90 seconds.
    """
    if retry_after:
        try:
            return min(float(retry_after), 120.0)
        except (ValueError, TypeError):
            pass
    return min(backoff_base ** (attempt + 1), 90.0)


async def _retry_on_transient(
    coro_factory,
    *,
    max_retries: int = MAX_RETRIES,
    backoff_base: float = RETRY_BACKOFF_BASE,
):
    """Retry a coroutine factory on transient HTTP / timeout errors.

    ``coro_factory`` is a zero-arg callable returning a fresh awaitable
    each time.
    """
    for attempt in range(max_retries + 1):
        try:
            return await coro_factory()
        except httpx.TransportError as exc:
            # Timeouts are TransportErrors too.
            if attempt >= max_retries:
                raise
            wait = _compute_wait(None, attempt, backoff_base)
            logger.warning(
                "LLM request %s (attempt %d/%d), retrying in %.1fs",
                type(exc).__name__, attempt + 1, max_retries + 1, wait,
            )
            await asyncio.sleep(wait)
        except _RetryableStatus as exc:
            if attempt >= max_retries:
                raise exc.error from None
            wait = _compute_wait(exc.retry_after, attempt, backoff_base)
            logger.warning(
                "LLM request %d (attempt %d/%d), retrying in %.1fs",
                exc.error.status, attempt + 1, max_retries + 1, wait,
            )
            await asyncio.sleep(wait)
    raise AssertionError("unreachable")  # pragma: no cover


def _raise_for_status(provider: str, response: httpx.Response) -> None:
    if response.status_code < 400:
        return
    try:
        body = response.json()
        err = body.get("error", response.text) if isinstance(body, dict) else response.text
        message = err.get("message", str(err)) if isinstance(err, dict) else str(err)
    except ValueError:
        message = response.text
    error = LLMError(provider, response.status_code, message)
    if response.status_code in _RETRYABLE_STATUS_CODES:
        raise _RetryableStatus(error, response.headers.get("retry-after"))
    raise error


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------

ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_API_VERSION = "2023-06-01"


async def chat_anthropic(
    api_key: str,
    model: str,
    system_prompt: str,
    messages: list[dict],
    max_tokens: int = 2048,
) -> dict:
    """Send a chat request to the Anthropic Messages API."""
    body = {
        "model": model,
        "max_tokens": max_tokens,
        "system": system_prompt,
        "messages": messages,
    }
    headers = {
        "x-api-key": api_key,
        "anthropic-version": ANTHROPIC_API_VERSION,
        "Content-Type": "application/json",
    }

    async def _call():
        response = await _get_client().post(ANTHROPIC_MESSAGES_URL, headers=headers, json=body)
        _raise_for_status("Anthropic", response)
        data = response.json()
        text_parts = [b["text"] for b in data.get("content", []) if b.get("type") == "text"]
        if not text_parts:
            raise LLMError("Anthropic", response.status_code, "No text block in response")
        usage = data.get("usage", {})
        return {
            "text": "\n".join(text_parts),
            "usage": {
                "input_tokens": usage.get("input_tokens", 0),
                "output_tokens": usage.get("output_tokens", 0),
            },
        }

    return await _retry_on_transient(_call)


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"


async def chat_openai(
    api_key: str,
    model: str,
    system_prompt: str,
    messages: list[dict],
    max_tokens: int = 2048,
    json_mode: bool = True,
) -> dict:
    """Send a chat request to the OpenAI Chat Completions API."""
    body: dict = {
        "model": model,
        "messages": [{"role": "system", "content": system_prompt}, *messages],
        "max_completion_tokens": max_tokens,
    }
    if json_mode:
        body["response_format"] = {"type": "json_object"}
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }

    async def _call():
        response = await _get_client().post(OPENAI_CHAT_URL, headers=headers, json=body)
        _raise_for_status("OpenAI", response)
        data = response.json()
        choices = data.get("choices", [])
        content = choices[0].get("message", {}).get("content") if choices else None
        if not content:
            raise LLMError("OpenAI", response.status_code, "No content in response")
        usage = data.get("usage", {})
        return {
            "text": content,
            "usage": {
                "input_tokens": usage.get("prompt_tokens", 0),
                "output_tokens": usage.get("completion_tokens", 0),
            },
        }

    return await _retry_on_transient(_call)


# ---------------------------------------------------------------------------
# Ollama (local)
# ---------------------------------------------------------------------------


async def chat_ollama(
    endpoint: str,
    model: str,
    system_prompt: str,
    messages: list[dict],
    json_mode: bool = True,
) -> dict:
    """Send a non-streaming chat request to an Ollama ``/api/chat`` endpoint."""
    body: dict = {
        "model": model,
        "messages": [{"role": "system", "content": system_prompt}, *messages],
        "stream": False,
    }
    if json_mode:
        body["format"] = "json"
    url = f"{endpoint.rstrip('/')}/api/chat"

    async def _call():
        response = await _get_client().post(url, json=body)
        _raise_for_status("Ollama", response)
        data = response.json()
        content = (data.get("message") or {}).get("content")
        if not content:
            raise LLMError("Ollama", response.status_code, "No content in response")
        return {
            "text": content,
            "usage": {
                "input_tokens": data.get("prompt_eval_count", 0),
                "output_tokens": data.get("eval_count", 0),
            },
        }

    return await _retry_on_transient(_call)


# ---------------------------------------------------------------------------
# Unified entry point
# ---------------------------------------------------------------------------


async def chat(
    model: str,
    system_prompt: str,
    messages: list[dict],
    max_tokens: int = 2048,
    provider: str | None = None,
) -> dict:
    """Send a chat request to the configured LLM provider.

    Parameters
    ----------
    model : str
        Model identifier.
    system_prompt : str
        System-level instructions for the model.
    messages : list[dict]
        ``[{"role": "user"|"assistant", "content": str}]``.
    max_tokens : int
        Maximum tokens in the response (ignored by Ollama).
    provider : str | None
        ``"anthropic"``, ``"openai"`` or ``"ollama"``; defaults to
        ``settings.LLM_PROVIDER``.

    Returns
    -------
    dict
        ``{"text": str, "usage": {"input_tokens": int, "output_tokens": int}}``
    """
    provider = provider or settings.LLM_PROVIDER
    if provider == "openai":
        return await chat_openai(settings.OPENAI_API_KEY, model, system_prompt, messages, max_tokens)
    if provider == "ollama":
        return await chat_ollama(settings.OLLAMA_ENDPOINT, model, system_prompt, messages)
    if provider == "anthropic":
        return await chat_anthropic(settings.ANTHROPIC_API_KEY, model, system_prompt, messages, max_tokens)
    raise ValueError(f"Unknown LLM provider: {provider}")
