"""Tests for shared helpers: utils, config loading, and the LLM client wrapper."""
from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from resonance.config import Settings, get_settings
from resonance.llm import LLMCallError, LLMClient, extract_json_object
from resonance.utils import as_utc, clip, json_parse, to_json


class TestJsonParse:
    def test_valid(self):
        assert json_parse('{"a": 1}') == {"a": 1}

    def test_invalid_default(self):
        assert json_parse("{broken") == {}
        assert json_parse(None, []) == []

    def test_roundtrip_keeps_unicode(self):
        assert to_json(["Süddeutsche"]) == '["Süddeutsche"]'


class TestDatetimes:
    def test_naive_treated_as_utc(self):
        assert as_utc(datetime(2026, 1, 1, 12)) == datetime(2026, 1, 1, 12, tzinfo=UTC)

    def test_aware_converted(self):
        cet = timezone(timedelta(hours=1))
        assert as_utc(datetime(2026, 1, 1, 13, tzinfo=cet)).hour == 12

    def test_none(self):
        assert as_utc(None) is None


def test_clip():
    assert clip("abcdef", 3) == "abc"
    assert clip(None, 3) == ""


class TestSettings:
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("RESONANCE_GATEWAY_TIMEOUT", "5")
        monkeypatch.setenv("RESONANCE_SALIENCE_BASELINE", "not-a-number")
        settings = Settings()
        assert settings.gateway_timeout_seconds == 5.0
        assert settings.salience_baseline == 0.5

    def test_yaml_overrides(self, tmp_path, monkeypatch):
        cfg = tmp_path / "resonance.yaml"
        cfg.write_text("llm_provider: openai\nport: 9000\ndatabase_path: /tmp/r.db\n", encoding="utf-8")
        monkeypatch.setenv("RESONANCE_CONFIG", str(cfg))
        get_settings.cache_clear()
        try:
            settings = get_settings()
        finally:
            get_settings.cache_clear()
        assert settings.llm_provider == "openai"
        assert settings.port == 9000
        assert settings.database_url == "sqlite:////tmp/r.db"

    def test_missing_yaml_uses_defaults(self, tmp_path):
        assert Settings.from_yaml(tmp_path / "absent.yaml").port == 8002


class TestLLMClient:
    def _client(self, timeout=1.0):
        with patch("anthropic.AsyncAnthropic"):
            return LLMClient(provider="anthropic", api_key="test", timeout=timeout)

    @pytest.mark.asyncio
    async def test_parses_json(self):
        client = self._client()
        client._complete = AsyncMock(return_value='{"is_match": true}')
        assert await client.call("sys", "user") == {"is_match": True}

    @pytest.mark.asyncio
    async def test_invalid_json_not_retryable(self):
        client = self._client()
        client._complete = AsyncMock(return_value="I think so")
        with pytest.raises(LLMCallError) as exc_info:
            await client.call("sys", "user")
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self):
        client = self._client(timeout=0.01)

        async def slow(*args):
            await asyncio.sleep(1)
            return "{}"

        client._complete = slow
        with pytest.raises(LLMCallError) as exc_info:
            await client.call("sys", "user")
        assert exc_info.value.retryable is True

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            LLMClient(provider="carrier-pigeon")


class TestExtractJsonObject:
    def test_fenced_block(self):
        text = 'Here you go:\n```json\n{"learnings": ["a"]}\n```'
        assert extract_json_object(text) == {"learnings": ["a"]}

    def test_list_rejected(self):
        with pytest.raises(LLMCallError):
            extract_json_object("[1, 2]")
