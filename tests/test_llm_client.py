"""Tests for the OpenAI caption extraction client."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
from unittest.mock import MagicMock

import httpx
import pytest
from openai import APITimeoutError, RateLimitError

from media_catalog.adapters import llm_client
from media_catalog.adapters.llm_client import LLMClient, load_prompt_from_file
from media_catalog.domain.exceptions import LLMAPIError

OPENAI_URL = "https://api.openai.com/v1/chat/completions"


@pytest.fixture(autouse=True)
def clear_prompt_cache() -> None:
    """Ensure prompt cache is cleared between tests."""

    llm_client._read_prompt.cache_clear()


def _response(content: str | None, tokens_in: int = 120, tokens_out: int = 40) -> MagicMock:
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    response.usage.prompt_tokens = tokens_in
    response.usage.completion_tokens = tokens_out
    return response


def _client(openai_mock: MagicMock, **kwargs: object) -> LLMClient:
    return LLMClient(api_key="test-key", client=openai_mock, **kwargs)


class TestPromptLoading:
    def test_loads_caption_prompt(self) -> None:
        prompt = load_prompt_from_file("config/prompts/caption.yaml")

        assert prompt.version is not None
        assert "product code" in prompt.content
        assert prompt.checksum == hashlib.sha256(prompt.content.encode("utf-8")).hexdigest()

    def test_plain_text_prompt_has_no_version(self, tmp_path: Path) -> None:
        prompt_file = tmp_path / "plain.txt"
        prompt_file.write_text("Extract fields")

        prompt = load_prompt_from_file(str(prompt_file))

        assert prompt.version is None
        assert prompt.content == "Extract fields"

    def test_yaml_without_system_is_rejected(self, tmp_path: Path) -> None:
        prompt_file = tmp_path / "broken.yaml"
        prompt_file.write_text('version: "1"\n')

        with pytest.raises(ValueError, match="system"):
            load_prompt_from_file(str(prompt_file))

    def test_missing_file(self) -> None:
        with pytest.raises(FileNotFoundError):
            load_prompt_from_file("config/prompts/does-not-exist.yaml")

    def test_edited_prompt_is_reloaded(self, tmp_path: Path) -> None:
        prompt_file = tmp_path / "prompt.txt"
        prompt_file.write_text("first")
        assert load_prompt_from_file(str(prompt_file)).content == "first"

        prompt_file.write_text("second")
        stat = prompt_file.stat()
        os.utime(prompt_file, (stat.st_atime, stat.st_mtime + 5))

        assert load_prompt_from_file(str(prompt_file)).content == "second"


def test_cost_estimate_falls_back_for_unknown_models() -> None:
    assert llm_client.estimate_cost_usd("gpt-4o", 1_000_000, 0) == pytest.approx(2.50)
    assert llm_client.estimate_cost_usd("local-model", 0, 1_000_000) == pytest.approx(0.600)


class TestExtractCaptionFields:
    def test_returns_raw_reply_and_records_metadata(self) -> None:
        openai_mock = MagicMock()
        openai_mock.chat.completions.create.return_value = _response(
            '{"product_code": "ABC012323"}'
        )
        client = _client(openai_mock, model="gpt-4o-mini")

        reply = client.extract_caption_fields("Blue Widget #ABC012323")

        assert reply == '{"product_code": "ABC012323"}'
        kwargs = openai_mock.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["messages"][0]["role"] == "system"
        assert kwargs["messages"][1] == {"role": "user", "content": "Blue Widget #ABC012323"}

        metadata = client.get_call_metadata()
        assert metadata.tokens_in == 120
        assert metadata.tokens_out == 40
        assert metadata.cost_usd == pytest.approx((120 * 0.150 + 40 * 0.600) / 1_000_000)
        assert metadata.prompt_version == client.prompt_version

    def test_empty_reply_becomes_empty_string(self) -> None:
        openai_mock = MagicMock()
        openai_mock.chat.completions.create.return_value = _response(None)

        assert _client(openai_mock).extract_caption_fields("caption") == ""

    def test_timeout_is_wrapped(self) -> None:
        openai_mock = MagicMock()
        openai_mock.chat.completions.create.side_effect = APITimeoutError(
            request=httpx.Request("POST", OPENAI_URL)
        )

        with pytest.raises(LLMAPIError, match="timed out"):
            _client(openai_mock).extract_caption_fields("caption")

    def test_rate_limit_is_wrapped(self) -> None:
        request = httpx.Request("POST", OPENAI_URL)
        openai_mock = MagicMock()
        openai_mock.chat.completions.create.side_effect = RateLimitError(
            "slow down", response=httpx.Response(429, request=request), body=None
        )

        with pytest.raises(LLMAPIError, match="Rate limit exceeded"):
            _client(openai_mock).extract_caption_fields("caption")

    def test_metadata_requires_a_call(self) -> None:
        with pytest.raises(RuntimeError):
            _client(MagicMock()).get_call_metadata()
