"""
Unit tests for LLM provider selection and fallback.
"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from facility_monitor.services import llm_provider
from facility_monitor.services.error_handler import ExecutionError


def test_available_providers(monkeypatch):
    """Test that providers are listed in fallback order from the environment."""
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
    assert llm_provider.get_available_llm_providers() == ["openai", "anthropic"]

    monkeypatch.setenv("OPENAI_API_KEY", "  ")
    assert llm_provider.get_available_llm_providers() == ["anthropic"]

    monkeypatch.delenv("ANTHROPIC_API_KEY")
    assert llm_provider.get_available_llm_providers() == []


def test_parse_json_response():
    assert llm_provider.parse_json_response('{"a": 1}') == {"a": 1}
    assert llm_provider.parse_json_response('```json\n{"a": 1}\n```') == {"a": 1}
    with pytest.raises(ValueError):
        llm_provider.parse_json_response("[1, 2]")
    with pytest.raises(ValueError):
        llm_provider.parse_json_response("not json")


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_no_provider_configured(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    with pytest.raises(ExecutionError) as exc:
        await llm_provider.complete_json("system", "user")
    assert "No LLM API key" in str(exc.value)


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_fallback_to_anthropic(monkeypatch):
    """Test that a failing OpenAI call falls back to Anthropic."""
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
    openai_mock = AsyncMock(side_effect=ValueError("LLM response is not a JSON object"))
    anthropic_mock = AsyncMock(return_value={"recommendations": []})

    with patch.dict(llm_provider.PROVIDERS, {"openai": openai_mock, "anthropic": anthropic_mock}):
        result = await llm_provider.complete_json("system", "user", temperature=0.5)

    assert result == {"recommendations": []}
    openai_mock.assert_awaited_once_with("system", "user", 0.5)
    anthropic_mock.assert_awaited_once()


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_all_providers_fail(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    failing = AsyncMock(side_effect=ValueError("bad reply"))

    with patch.dict(llm_provider.PROVIDERS, {"openai": failing}):
        with pytest.raises(ExecutionError) as exc:
            await llm_provider.complete_json("system", "user")

    assert "openai error: bad reply" in str(exc.value)


@pytest.mark.asyncio
@pytest.mark.timeout(10)
async def test_provider_http_clients_are_closed():
    """Test that each completion closes the HTTP client it opened."""
    openai_reply = MagicMock()
    openai_reply.choices[0].message.content = '{"provider": "openai"}'
    openai_client = MagicMock()
    openai_client.chat.completions.create = AsyncMock(return_value=openai_reply)

    anthropic_reply = MagicMock()
    anthropic_reply.content[0].text = '{"provider": "anthropic"}'
    anthropic_client = MagicMock()
    anthropic_client.messages.create = AsyncMock(return_value=anthropic_reply)

    with patch.object(llm_provider, "AsyncOpenAI", return_value=openai_client) as openai_cls, \
            patch.object(llm_provider.anthropic, "AsyncAnthropic", return_value=anthropic_client) as anthropic_cls:
        assert await llm_provider._openai_json("system", "user", 0.2) == {"provider": "openai"}
        assert await llm_provider._anthropic_json("system", "user", 0.2) == {"provider": "anthropic"}

    assert openai_cls.call_args.kwargs["http_client"].is_closed
    assert anthropic_cls.call_args.kwargs["http_client"].is_closed
