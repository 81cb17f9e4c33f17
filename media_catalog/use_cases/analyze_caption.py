"""Caption analysis use case.

Runs the manual parser, falls back to the language model when required
fields are missing, merges both results, stores them on the message and
triggers the media group fan-out.
"""

import json
import re
from collections.abc import Callable
from datetime import date
from typing import Any, Final

from media_catalog.config.logging_config import get_logger
from media_catalog.domain.exceptions import LLMAPIError, ValidationError
from media_catalog.domain.models import (
    AnalyzedContent,
    AuditEventType,
    Message,
    ParsingMetadata,
    ParsingMethod,
    ProcessingState,
)
from media_catalog.domain.outcomes import Found, NotFound
from media_catalog.domain.processing_constants import (
    AI_CONFIDENCE,
    MAX_QUANTITY_EXCLUSIVE,
    MAX_VENDOR_LETTERS,
)
from media_catalog.domain.protocols import (
    CaptionLLMClientProtocol,
    MessageRepositoryProtocol,
)
from media_catalog.observability.metrics import CAPTION_ANALYSES_TOTAL
from media_catalog.observability.tracing import correlation_scope
from media_catalog.services.caption_parser import (
    ALL_FIELDS,
    CaptionParser,
    needs_ai_fallback,
)
from media_catalog.services.content_merge import merge_analysis
from media_catalog.services.date_code_resolver import normalize_purchase_date, today_in
from media_catalog.services.processing_state import ProcessingStateMachine
from media_catalog.use_cases.sync_media_group import MediaGroupSynchronizer

logger = get_logger(__name__)

JSON_OBJECT_PATTERN: Final[re.Pattern[str]] = re.compile(r"\{.*\}", flags=re.DOTALL)
VENDOR_LETTERS_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z]+")
INTEGER_TEXT_PATTERN: Final[re.Pattern[str]] = re.compile(r"[0-9]+")


def _clean_text(value: Any) -> str | None:
    if value is None or isinstance(value, bool | dict | list):
        return None
    text = str(value).strip()
    return text or None


def _clean_quantity(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not value.is_integer():
            return None
        quantity = int(value)
    elif isinstance(value, int):
        quantity = value
    else:
        text = str(value).strip()
        if not INTEGER_TEXT_PATTERN.fullmatch(text):
            return None
        quantity = int(text)
    if 0 < quantity < MAX_QUANTITY_EXCLUSIVE:
        return quantity
    return None


def _clean_vendor(value: Any, product_code: str | None) -> str | None:
    candidate = _clean_text(value) or product_code
    if not candidate:
        return None
    letters = VENDOR_LETTERS_PATTERN.match(candidate)
    if not letters:
        return None
    return letters.group(0)[:MAX_VENDOR_LETTERS].upper()


def decode_reply(raw: str) -> dict[str, Any]:
    """Decode the model reply into a JSON object.

    Accepts a bare object or one embedded in surrounding prose or a code
    fence.

    Raises:
        ValidationError: No JSON object could be decoded
    """
    text = raw.strip()
    candidates = [text]
    embedded = JSON_OBJECT_PATTERN.search(text)
    if embedded and embedded.group(0) != text:
        candidates.append(embedded.group(0))

    for candidate in candidates:
        try:
            decoded = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(decoded, dict):
            return decoded
    raise ValidationError("AI reply is not a JSON object")


class AIFallbackAnalyzer:
    """Extracts caption fields with a language model.

    Args:
        llm_client: Model client returning raw replies
        today_provider: Reference date for purchase-date validation
    """

    def __init__(
        self,
        llm_client: CaptionLLMClientProtocol,
        *,
        today_provider: Callable[[], date] | None = None,
    ) -> None:
        self._llm_client = llm_client
        self._today_provider = today_provider or today_in

    def analyze(self, caption: str) -> AnalyzedContent:
        """Return the model's reading of ``caption``.

        A reply that is not valid JSON is re-read with the manual parser so
        the call still yields whatever fields its text carries.

        Raises:
            LLMAPIError: The model call failed or timed out
        """
        raw = self._llm_client.extract_caption_fields(caption)
        try:
            reply = decode_reply(raw)
        except ValidationError as exc:
            logger.warning(
                "ai_reply_unparseable", error=str(exc), reply_preview=raw[:200]
            )
            return self._regex_fallback(raw, str(exc))
        return self._coerce(reply)

    def _coerce(self, reply: dict[str, Any]) -> AnalyzedContent:
        product_code = _clean_text(reply.get("product_code"))
        if product_code:
            product_code = product_code.lstrip("#").strip() or None

        fields: dict[str, Any] = {
            "product_name": _clean_text(reply.get("product_name")) or "",
            "product_code": product_code,
            "vendor_uid": _clean_vendor(reply.get("vendor_uid"), product_code),
            "purchase_date": normalize_purchase_date(
                reply.get("purchase_date"), today=self._today_provider()
            ),
            "quantity": _clean_quantity(reply.get("quantity")),
            "notes": _clean_text(reply.get("notes")),
        }
        missing = [name for name in ALL_FIELDS if fields[name] in (None, "")]
        return AnalyzedContent(
            **fields,
            parsing_metadata=ParsingMetadata(
                method=ParsingMethod.AI,
                confidence=AI_CONFIDENCE,
                missing_fields=missing,
                partial_success=bool(missing),
            ),
        )

    def _regex_fallback(self, raw: str, error: str) -> AnalyzedContent:
        parsed = CaptionParser(today_provider=self._today_provider).parse(raw)
        metadata = parsed.parsing_metadata.model_copy(
            update={
                "method": ParsingMethod.AI,
                "confidence": AI_CONFIDENCE,
                "error": error,
            }
        )
        return parsed.model_copy(update={"parsing_metadata": metadata})


class CaptionAnalysisService:
    """Analyzes one message's caption and stores the result.

    Args:
        repository: Message store
        state_machine: Applies lifecycle transitions
        synchronizer: Media group fan-out
        parser: Manual caption parser
        analyzer: AI fallback; None disables it
    """

    def __init__(
        self,
        repository: MessageRepositoryProtocol,
        state_machine: ProcessingStateMachine,
        synchronizer: MediaGroupSynchronizer,
        parser: CaptionParser | None = None,
        analyzer: AIFallbackAnalyzer | None = None,
    ) -> None:
        self._repository = repository
        self._state_machine = state_machine
        self._synchronizer = synchronizer
        self._parser = parser or CaptionParser()
        self._analyzer = analyzer

    def process_message(self, message_id: str, *, force: bool = False) -> Message | None:
        """Run caption analysis for ``message_id``.

        Args:
            message_id: Message to analyze
            force: Re-analyze completed messages and re-sync synced siblings

        Returns:
            The stored message after processing, or None if it does not exist
        """
        match self._repository.get_message(message_id):
            case NotFound(key=key):
                logger.warning("caption_analysis_message_missing", message_id=key)
                return None
            case Found(message=message):
                pass

        with correlation_scope(message.correlation_id):
            return self._process(message, force=force)

    def _process(self, message: Message, *, force: bool) -> Message:
        state = message.processing_state

        if not message.has_caption:
            if message.media_group_id:
                return self._synchronizer.join_group(message)
            if state in (ProcessingState.PENDING, ProcessingState.INITIALIZED):
                return self._state_machine.transition(
                    message, ProcessingState.WAITING_CAPTION, reason="caption_missing"
                )
            return message

        if not force and (
            state is ProcessingState.PROCESSING_CAPTION
            or (state is ProcessingState.COMPLETED and message.analyzed_content)
        ):
            logger.info(
                "caption_analysis_skipped", message_id=message.id, state=state.value
            )
            return message

        if state in (ProcessingState.INITIALIZED, ProcessingState.WAITING_CAPTION):
            message = self._state_machine.transition(
                message, ProcessingState.HAS_CAPTION, reason="caption_present"
            )
        elif state not in (ProcessingState.HAS_CAPTION, ProcessingState.PENDING):
            message = self._state_machine.transition(
                message, ProcessingState.PENDING, reason="reanalysis_requested"
            )

        message = self._state_machine.transition(
            message, ProcessingState.PROCESSING_CAPTION, reason="caption_analysis_started"
        )
        caption = message.caption or ""

        manual = self._parser.parse(caption)
        ai: AnalyzedContent | None = None
        if self._analyzer is not None and needs_ai_fallback(manual):
            try:
                ai = self._analyzer.analyze(caption)
            except LLMAPIError as exc:
                CAPTION_ANALYSES_TOTAL.labels(method="ai", outcome="error").inc()
                return self._state_machine.mark_error(
                    message,
                    f"AI analysis failed: {exc}",
                    reason="ai_analysis_failed",
                    event_type=AuditEventType.AI_ANALYSIS_FAILED,
                    metadata={
                        "manual_missing_fields": manual.parsing_metadata.missing_fields
                    },
                )

        content = merge_analysis(manual, ai, timestamp=self._state_machine.now())
        method = content.parsing_metadata.method

        updates: dict[str, Any] = {"analyzed_content": content}
        if message.media_group_id:
            if not message.is_original_caption:
                self._synchronizer.claim_original_caption(message)
            updates["is_original_caption"] = True
            updates["group_caption_synced"] = True

        message = self._state_machine.transition(
            message,
            ProcessingState.COMPLETED,
            updates=updates,
            reason="caption_analyzed",
            event_type=AuditEventType.CAPTION_ANALYZED,
            metadata={
                "method": method.value,
                "confidence": content.parsing_metadata.confidence,
                "missing_fields": content.parsing_metadata.missing_fields,
                "ai_filled_fields": content.parsing_metadata.ai_filled_fields,
            },
        )
        CAPTION_ANALYSES_TOTAL.labels(method=method.value, outcome="completed").inc()
        logger.info(
            "caption_analyzed",
            message_id=message.id,
            method=method.value,
            missing_fields=content.parsing_metadata.missing_fields,
            media_group_id=message.media_group_id,
        )

        if message.media_group_id:
            self._synchronizer.sync(
                message.media_group_id, message.id, content, force=force
            )
        return message
