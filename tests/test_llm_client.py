"""Tests for the LLM client -- provider payloads, retries and dispatch."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from autodidact.clients import llm_client
from autodidact.clients.llm_client import LLMError, _compute_wait


def _response(data, status_code=200, headers=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = data
    resp.text = str(data)
    resp.headers = headers or {}
    return resp


def _client(*responses):
    client = MagicMock()
    client.post = AsyncMock(side_effect=list(responses))
    return client


@pytest.fixture
def no_sleep():
    with patch("autodidact.clients.llm_client.asyncio.sleep", new=AsyncMock()) as sleep:
        yield sleep


@pytest.mark.asyncio
async def test_chat_anthropic_parses_text_and_usage():
    client = _client(_response({
        "content": [{"type": "text", "text": '{"steps": []}'}],
        "usage": {"input_tokens": 10, "output_tokens": 5},
    }))
    with patch.object(llm_client, "_get_client", return_value=client):
        result = await llm_client.chat_anthropic(
            "key", "claude-x", "system", [{"role": "user", "content": "hi"}], 100,
        )

    assert result == {"text": '{"steps": []}', "usage": {"input_tokens": 10, "output_tokens": 5}}
    body = client.post.call_args.kwargs["json"]
    assert body["system"] == "system"
    assert body["max_tokens"] == 100
    assert client.post.call_args.kwargs["headers"]["x-api-key"] == "key"


@pytest.mark.asyncio
async def test_chat_anthropic_without_text_block_raises():
    client = _client(_response({"content": [{"type": "tool_use"}]}))
    with patch.object(llm_client, "_get_client", return_value=client):
        with pytest.raises(LLMError):
            await llm_client.chat_anthropic("key", "m", "s", [])


@pytest.mark.asyncio
async def test_chat_openai_requests_json_mode():
    client = _client(_response({
        "choices": [{"message": {"content": "{}"}}],
        "usage": {"prompt_tokens": 3, "completion_tokens": 4},
    }))
    with patch.object(llm_client, "_get_client", return_value=client):
        result = await llm_client.chat_openai("key", "gpt", "sys", [{"role": "user", "content": "x"}])

    body = client.post.call_args.kwargs["json"]
    assert body["response_format"] == {"type": "json_object"}
    assert body["messages"][0] == {"role": "system", "content": "sys"}
    assert result["usage"] == {"input_tokens": 3, "output_tokens": 4}


@pytest.mark.asyncio
async def test_chat_ollama_non_streaming_json():
    client = _client(_response({"message": {"content": "{}"}, "prompt_eval_count": 7, "eval_count": 2}))
    with patch.object(llm_client, "_get_client", return_value=client):
        result = await llm_client.chat_ollama("http://localhost:11434/", "phi4", "sys", [])

    assert client.post.call_args.args[0] == "http://localhost:11434/api/chat"
    body = client.post.call_args.kwargs["json"]
    assert body["stream"] is False
    assert body["format"] == "json"
    assert result["text"] == "{}"


@pytest.mark.asyncio
async def test_retryable_status_is_retried(no_sleep):
    client = _client(
        _response({"error": {"message": "overloaded"}}, status_code=529),
        _response({"content": [{"type": "text", "text": "ok"}]}),
    )
    with patch.object(llm_client, "_get_client", return_value=client):
        result = await llm_client.chat_anthropic("key", "m", "s", [])

    assert result["text"] == "ok"
    assert client.post.await_count == 2
    no_sleep.assert_awaited_once()


@pytest.mark.asyncio
async def test_retry_after_header_is_honoured(no_sleep):
    client = _client(
        _response({"error": "slow down"}, status_code=429, headers={"retry-after": "7"}),
        _response({"content": [{"type": "text", "text": "ok"}]}),
    )
    with patch.object(llm_client, "_get_client", return_value=client):
        await llm_client.chat_anthropic("key", "m", "s", [])

    no_sleep.assert_awaited_once_with(7.0)


@pytest.mark.asyncio
async def test_retries_exhausted_raise_llm_error(no_sleep):
    responses = [_response({"error": "down"}, status_code=503) for _ in range(llm_client.MAX_RETRIES + 1)]
    client = _client(*responses)
    with patch.object(llm_client, "_get_client", return_value=client):
        with pytest.raises(LLMError) as exc_info:
            await llm_client.chat_anthropic("key", "m", "s", [])

    assert exc_info.value.status == 503
    assert client.post.await_count == llm_client.MAX_RETRIES + 1


@pytest.mark.asyncio
async def test_client_error_is_not_retried(no_sleep):
    client = _client(_response({"error": {"message": "bad key"}}, status_code=401))
    with patch.object(llm_client, "_get_client", return_value=client):
        with pytest.raises(LLMError, match="bad key"):
            await llm_client.chat_anthropic("key", "m", "s", [])

    assert client.post.await_count == 1
    no_sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_transport_error_is_retried(no_sleep):
    client = MagicMock()
    client.post = AsyncMock(side_effect=[
        httpx.ReadTimeout("slow"),
        _response({"content": [{"type": "text", "text": "ok"}]}),
    ])
    with patch.object(llm_client, "_get_client", return_value=client):
        result = await llm_client.chat_anthropic("key", "m", "s", [])

    assert result["text"] == "ok"


def test_compute_wait():
    assert _compute_wait("3", 0, 2.0) == 3.0
    assert _compute_wait("999", 0, 2.0) == 120.0
    assert _compute_wait(None, 0, 2.0) == 2.0
    assert _compute_wait(None, 2, 2.0) == 8.0
    assert _compute_wait("soon", 10, 2.0) == 90.0


@pytest.mark.asyncio
async def test_chat_dispatches_on_provider(monkeypatch):
    monkeypatch.setattr("autodidact.config.settings.LLM_PROVIDER", "openai")
    monkeypatch.setattr("autodidact.config.settings.OPENAI_API_KEY", "sk-test")
    with patch.object(llm_client, "chat_openai", new=AsyncMock(return_value={"text": "x"})) as mock:
        await llm_client.chat("gpt", "sys", [], max_tokens=50)

    mock.assert_awaited_once_with("sk-test", "gpt", "sys", [], 50)


@pytest.mark.asyncio
async def test_chat_unknown_provider():
    with pytest.raises(ValueError, match="Unknown LLM provider"):
        await llm_client.chat("m", "s", [], provider="carrier-pigeon")
