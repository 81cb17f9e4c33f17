"""Composition of the ingestion pipeline from settings."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from media_catalog.adapters.llm_client import LLMClient
from media_catalog.adapters.media_storage import LocalMediaStorage, SupabaseMediaStorage
from media_catalog.adapters.repository_factory import create_repository
from media_catalog.adapters.telegram_client import TelegramBotClient
from media_catalog.config.logging_config import get_logger
from media_catalog.config.settings import Settings
from media_catalog.domain.protocols import (
    CaptionLLMClientProtocol,
    MediaStorageProtocol,
    MessageRepositoryProtocol,
    TelegramFileClientProtocol,
)
from media_catalog.ports.task_queue import TaskQueuePort
from media_catalog.services.caption_parser import CaptionParser
from media_catalog.services.date_code_resolver import DateCodeResolver
from media_catalog.services.processing_state import ProcessingStateMachine
from media_catalog.use_cases.analyze_caption import (
    AIFallbackAnalyzer,
    CaptionAnalysisService,
)
from media_catalog.use_cases.ingest_webhook import IngestionGateway
from media_catalog.use_cases.media_transfer import MediaTransfer
from media_catalog.use_cases.repair_operations import RepairOperations
from media_catalog.use_cases.sync_media_group import MediaGroupSynchronizer

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class PipelineServices:
    """Every use case wired to one repository."""

    repository: MessageRepositoryProtocol
    task_queue: TaskQueuePort
    state_machine: ProcessingStateMachine
    synchronizer: MediaGroupSynchronizer
    analysis_service: CaptionAnalysisService
    gateway: IngestionGateway
    repair: RepairOperations


def create_llm_client(settings: Settings) -> LLMClient | None:
    """Build the OpenAI client, or None when no API key is configured."""
    if not settings.ai_enabled or settings.openai_api_key is None:
        logger.info("ai_fallback_disabled", reason="missing_openai_api_key")
        return None
    return LLMClient(
        api_key=settings.openai_api_key.get_secret_value(),
        model=settings.llm_model,
        temperature=settings.llm_temperature,
        timeout=settings.llm_timeout_seconds,
        prompt_file=settings.llm_prompt_file,
    )


def create_telegram_client(settings: Settings) -> TelegramBotClient | None:
    if settings.telegram_bot_token is None:
        logger.info("media_download_disabled", reason="missing_telegram_bot_token")
        return None
    token = settings.telegram_bot_token.get_secret_value()
    if not token.strip():
        return None
    return TelegramBotClient(
        token,
        base_url=settings.telegram_api_base_url,
        timeout=settings.telegram_timeout_seconds,
    )


def create_media_storage(settings: Settings) -> MediaStorageProtocol:
    if settings.storage_backend == "supabase":
        if not settings.supabase_url or settings.supabase_service_key is None:
            raise ValueError(
                "SUPABASE_URL and SUPABASE_SERVICE_KEY must be set for the supabase backend"
            )
        logger.info("media_storage_supabase_selected", bucket=settings.storage_bucket)
        return SupabaseMediaStorage.from_credentials(
            settings.supabase_url,
            settings.supabase_service_key.get_secret_value(),
            settings.storage_bucket,
        )
    logger.info("media_storage_local_selected", root=settings.storage_root)
    return LocalMediaStorage(settings.storage_root, settings.storage_public_base_url)


def build_services(
    settings: Settings,
    *,
    repository: MessageRepositoryProtocol | None = None,
    llm_client: CaptionLLMClientProtocol | None = None,
    telegram_client: TelegramFileClientProtocol | None = None,
    storage: MediaStorageProtocol | None = None,
    clock: Callable[[], datetime] | None = None,
) -> PipelineServices:
    """Wire the pipeline.

    Collaborators passed explicitly are used as-is; missing ones are built
    from ``settings``.
    """
    repository = repository or create_repository(settings)
    task_queue = repository.task_queue()

    if llm_client is None:
        llm_client = create_llm_client(settings)
    if telegram_client is None:
        telegram_client = create_telegram_client(settings)
    if storage is None:
        storage = create_media_storage(settings)

    resolver = DateCodeResolver(settings.timezone)
    parser = CaptionParser(today_provider=resolver.today)
    analyzer = (
        AIFallbackAnalyzer(llm_client, today_provider=resolver.today)
        if llm_client is not None
        else None
    )
    media_transfer = (
        MediaTransfer(telegram=telegram_client, storage=storage)
        if telegram_client is not None
        else None
    )

    state_machine = ProcessingStateMachine(repository, clock=clock)
    synchronizer = MediaGroupSynchronizer(repository, state_machine)
    analysis_service = CaptionAnalysisService(
        repository,
        state_machine,
        synchronizer,
        parser=parser,
        analyzer=analyzer,
    )
    gateway = IngestionGateway(
        repository,
        state_machine,
        synchronizer,
        analysis_service,
        task_queue,
        media_transfer=media_transfer,
        max_retry_count=settings.max_retry_count,
        inline_processing=settings.inline_caption_processing,
    )
    repair = RepairOperations(
        repository,
        state_machine,
        analysis_service,
        synchronizer,
        media_transfer=media_transfer,
        task_queue=task_queue,
        stuck_threshold=timedelta(minutes=settings.stuck_threshold_minutes),
        max_retry_count=settings.max_retry_count,
        pending_batch_size=settings.pending_batch_size,
    )
    return PipelineServices(
        repository=repository,
        task_queue=task_queue,
        state_machine=state_machine,
        synchronizer=synchronizer,
        analysis_service=analysis_service,
        gateway=gateway,
        repair=repair,
    )
