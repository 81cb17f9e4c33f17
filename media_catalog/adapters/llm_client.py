"""OpenAI adapter behind the AI fallback analyzer.

The model sees the system prompt from ``config/prompts/caption.yaml`` and the
raw caption, and must reply with one JSON object. Decoding that reply is the
analyzer's job; this module only talks to the API and keeps call metadata.
"""

import hashlib
import time
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final

import yaml
from openai import APIError, APITimeoutError, OpenAI
from openai import RateLimitError as OpenAIRateLimitError

from media_catalog.config.logging_config import get_logger
from media_catalog.domain.exceptions import LLMAPIError
from media_catalog.domain.models import LLMCallMetadata

logger = get_logger(__name__)

# USD per 1M tokens
TOKEN_COSTS: Final[dict[str, dict[str, float]]] = {
    "gpt-4o-mini": {"input": 0.150, "output": 0.600},
    "gpt-4o": {"input": 2.50, "output": 10.00},
    "gpt-4.1-mini": {"input": 0.40, "output": 1.60},
    "gpt-3.5-turbo": {"input": 0.50, "output": 1.50},
}
FALLBACK_PRICING_MODEL: Final[str] = "gpt-4o-mini"

DEFAULT_PROMPT_PATH: Final[Path] = Path("config/prompts/caption.yaml")
REPLY_PREVIEW_CHARS: Final[int] = 500
_YAML_SUFFIXES: Final[frozenset[str]] = frozenset({".yaml", ".yml"})


@dataclass(frozen=True)
class PromptFileData:
    content: str
    version: str | None
    checksum: str
    size_bytes: int
    path: Path


def estimate_cost_usd(model: str, tokens_in: int, tokens_out: int) -> float:
    """Price a call; unknown models are billed at gpt-4o-mini rates."""
    pricing = TOKEN_COSTS.get(model, TOKEN_COSTS[FALLBACK_PRICING_MODEL])
    return (tokens_in * pricing["input"] + tokens_out * pricing["output"]) / 1_000_000


def _locate_prompt(file_path: str) -> Path:
    requested = Path(file_path).expanduser()
    candidates = [requested] if requested.is_absolute() else [
        Path.cwd() / requested,
        Path(__file__).resolve().parents[2] / requested,
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate.resolve()
    raise FileNotFoundError(f"Prompt file not found: {file_path}")


def _parse_prompt_yaml(path: Path) -> tuple[str, str]:
    document = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(document, dict):
        raise ValueError(f"Prompt YAML must be a mapping: {path}")
    version = document.get("version")
    if not isinstance(version, str):
        raise ValueError(f"Prompt YAML missing 'version' string: {path}")
    system = document.get("system")
    if not isinstance(system, str):
        raise ValueError(f"Prompt YAML missing 'system' string: {path}")
    return system, version


@lru_cache(maxsize=16)
def _read_prompt(path: Path, mtime: float) -> PromptFileData:
    # mtime in the key drops the entry once the file changes.
    version: str | None
    if path.suffix.lower() in _YAML_SUFFIXES:
        content, version = _parse_prompt_yaml(path)
    else:
        content, version = path.read_text(encoding="utf-8"), None

    encoded = content.encode("utf-8")
    return PromptFileData(
        content=content,
        version=version,
        checksum=hashlib.sha256(encoded).hexdigest(),
        size_bytes=len(encoded),
        path=path,
    )


def load_prompt_from_file(file_path: str) -> PromptFileData:
    """Load a system prompt from YAML (``version`` + ``system``) or plain text.

    Relative paths are tried against the working directory, then the repo root.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If a YAML prompt lacks ``version`` or ``system``
    """
    path = _locate_prompt(file_path)
    return _read_prompt(path, path.stat().st_mtime)


class LLMClient:
    """Extracts product fields from a caption with an OpenAI chat model.

    Args:
        api_key: OpenAI API key
        model: Chat model name
        temperature: Sampling temperature
        timeout: Request timeout in seconds, the only bound on a call
        prompt_file: System prompt location, defaults to the caption prompt
        client: Preconfigured OpenAI client (tests)
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        temperature: float = 0.3,
        timeout: int = 30,
        prompt_file: str | None = None,
        client: OpenAI | None = None,
    ) -> None:
        self.client = client or OpenAI(api_key=api_key, timeout=timeout)
        self.model = model
        self.temperature = temperature

        prompt = load_prompt_from_file(prompt_file or str(DEFAULT_PROMPT_PATH))
        self.system_prompt = prompt.content
        self.prompt_version = prompt.version
        self._prompt_checksum = prompt.checksum
        self._last_call: LLMCallMetadata | None = None

        logger.info(
            "llm_caption_prompt_loaded",
            model=model,
            prompt_version=prompt.version,
            prompt_hash=prompt.checksum,
            prompt_path=str(prompt.path),
            prompt_size_bytes=prompt.size_bytes,
        )

    def extract_caption_fields(self, caption: str) -> str:
        """Return the model's raw reply for ``caption`` (a JSON object string).

        Raises:
            LLMAPIError: On rate limiting, timeouts and other API errors
        """
        started = time.monotonic()
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": self.system_prompt},
                    {"role": "user", "content": caption},
                ],
                temperature=self.temperature,
                response_format={"type": "json_object"},
            )
        except OpenAIRateLimitError as e:
            raise self._api_error("Rate limit exceeded", e, started) from e
        except APITimeoutError as e:
            raise self._api_error("OpenAI request timed out", e, started) from e
        except APIError as e:
            raise self._api_error("OpenAI API error", e, started) from e

        latency_ms = _elapsed_ms(started)
        reply = (response.choices[0].message.content if response.choices else None) or ""
        usage = response.usage
        tokens_in = usage.prompt_tokens if usage else 0
        tokens_out = usage.completion_tokens if usage else 0

        self._last_call = LLMCallMetadata(
            prompt_hash=self._prompt_checksum,
            prompt_version=self.prompt_version,
            model=self.model,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost_usd=estimate_cost_usd(self.model, tokens_in, tokens_out),
            latency_ms=latency_ms,
        )
        logger.info(
            "llm_caption_extraction_completed",
            model=self.model,
            latency_ms=latency_ms,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
        )
        logger.debug("llm_caption_extraction_reply", reply_preview=reply[:REPLY_PREVIEW_CHARS])
        return reply

    def get_call_metadata(self) -> LLMCallMetadata:
        """Metadata of the last successful call.

        Raises:
            RuntimeError: If no call has been made
        """
        if self._last_call is None:
            raise RuntimeError("No LLM call has been made yet")
        return self._last_call

    def _api_error(self, summary: str, error: Exception, started: float) -> LLMAPIError:
        logger.warning(
            "llm_caption_extraction_failed",
            model=self.model,
            latency_ms=_elapsed_ms(started),
            error=str(error),
        )
        return LLMAPIError(f"{summary}: {error}")


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
