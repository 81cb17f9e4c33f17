"""Tests for the admin repair operations."""

import sqlite3
from datetime import UTC, datetime, timedelta

import pytest

from media_catalog.domain.exceptions import RepositoryError
from media_catalog.domain.models import (
    AuditEventType,
    ContentDisposition,
    ProcessingState,
)
from media_catalog.domain.task_queue import TaskCreate, TaskType

S = ProcessingState
CAPTION = "Blue Widget #ABC012323 x5 (new stock)"


def _ago(minutes: int) -> datetime:
    return datetime.now(tz=UTC) - timedelta(minutes=minutes)


def _stored(repo, message_id: str):
    return repo.get_message(message_id).message


def _events(repo, message_id: str) -> list[AuditEventType]:
    return [e.event_type for e in repo.get_audit_logs(message_id=message_id)]


def test_stuck_message_is_reset_and_then_completed(services, repo, make_message) -> None:
    stuck = make_message(
        caption=CAPTION,
        processing_state=S.PROCESSING_CAPTION,
        processing_started_at=_ago(20),
    )

    reset = services.repair.reset_stuck_messages()

    assert reset.success
    assert reset.counts == {
        "stuck_reset": 1,
        "orphans_requeued": 0,
        "errors_requeued": 0,
        "total": 1,
        "tasks_released": 0,
    }
    assert _stored(repo, stuck.id).processing_state is S.PENDING

    processed = services.repair.process_pending_messages()

    assert processed.success
    assert processed.counts == {"processed": 1, "completed": 1, "failed": 0, "waiting": 0}
    message = _stored(repo, stuck.id)
    assert message.processing_state is S.COMPLETED
    assert message.analyzed_content.product_code == "ABC012323"


def test_recent_processing_is_not_reset(services, repo, make_message) -> None:
    busy = make_message(
        caption=CAPTION,
        processing_state=S.PROCESSING_CAPTION,
        processing_started_at=_ago(1),
    )

    reset = services.repair.reset_stuck_messages()

    assert reset.counts["total"] == 0
    assert _stored(repo, busy.id).processing_state is S.PROCESSING_CAPTION


def test_process_pending_respects_batch_size(services, make_message) -> None:
    for _ in range(3):
        make_message(caption=CAPTION, processing_state=S.PENDING)

    result = services.repair.process_pending_messages(batch_size=2)

    assert result.counts["processed"] == 2
    assert result.counts["completed"] == 2


def test_process_pending_counts_uncaptioned_as_waiting(services, repo, make_message) -> None:
    bare = make_message(processing_state=S.PENDING)

    result = services.repair.process_pending_messages()

    assert result.counts == {"processed": 1, "completed": 0, "failed": 0, "waiting": 1}
    assert _stored(repo, bare.id).processing_state is S.WAITING_CAPTION


def test_process_pending_reports_failures(build, failing_llm, repo, make_message) -> None:
    services = build(llm_client=failing_llm)
    message = make_message(caption="Mystery item", processing_state=S.PENDING)

    result = services.repair.process_pending_messages()

    assert not result.success
    assert result.counts["failed"] == 1
    assert result.errors == [f"{message.id}: AI analysis failed: OpenAI request timed out"]


def test_process_pending_rejects_negative_batch(services) -> None:
    with pytest.raises(ValueError, match="batch_size must be positive"):
        services.repair.process_pending_messages(batch_size=-1)


def test_sync_media_group_content_reports_counts(services, make_message) -> None:
    holder = make_message(media_group_id="album", caption=CAPTION)
    make_message(media_group_id="album")
    services.analysis_service.process_message(holder.id)

    result = services.repair.sync_media_group_content("album", holder.id, force=True)

    assert result.success
    assert result.counts == {"updated": 1, "skipped": 0, "failed": 0}


def test_sync_media_group_content_unknown_source(services) -> None:
    result = services.repair.sync_media_group_content("album", "missing-id")

    assert not result.success
    assert result.errors == ["Source message not found: missing-id"]


def test_sync_pending_media_groups_retries_failed_fan_out(
    mocker, build, repo, make_message
) -> None:
    services = build(clock=lambda: datetime.now(tz=UTC) + timedelta(days=1))
    holder = make_message(media_group_id="album", caption=CAPTION)
    sibling = make_message(media_group_id="album", processing_state=S.READY_FOR_SYNC)
    original_save = repo.save_message
    remaining_failures = {sibling.id: 1}

    def _save(message):
        if remaining_failures.get(message.id):
            remaining_failures[message.id] -= 1
            raise RepositoryError("disk full")
        return original_save(message)

    mocker.patch.object(repo, "save_message", side_effect=_save)
    services.analysis_service.process_message(holder.id)

    stalled = _stored(repo, sibling.id)
    assert stalled.processing_state is S.READY_FOR_SYNC
    assert stalled.analyzed_content is None

    result = services.repair.sync_pending_media_groups()

    assert result.success
    assert result.counts == {
        "groups": 1,
        "updated": 1,
        "skipped": 0,
        "failed": 0,
        "waiting": 0,
    }
    synced = _stored(repo, sibling.id)
    assert synced.processing_state is S.COMPLETED
    assert synced.group_caption_synced is True
    assert synced.analyzed_content == _stored(repo, holder.id).analyzed_content


def test_sync_pending_media_groups_waits_for_holder(services, make_message) -> None:
    make_message(
        media_group_id="album", processing_state=S.READY_FOR_SYNC, updated_at=_ago(30)
    )
    make_message(
        media_group_id="album", processing_state=S.READY_FOR_SYNC, updated_at=_ago(30)
    )

    result = services.repair.sync_pending_media_groups()

    assert result.success
    assert result.counts["groups"] == 1
    assert result.counts["waiting"] == 1
    assert result.counts["updated"] == 0


def test_sync_pending_media_groups_leaves_recent_siblings(services, make_message) -> None:
    make_message(media_group_id="album", processing_state=S.READY_FOR_SYNC)

    result = services.repair.sync_pending_media_groups()

    assert result.counts["groups"] == 0


def test_sync_pending_media_groups_rejects_zero_batch(services) -> None:
    with pytest.raises(ValueError, match="batch_size must be positive"):
        services.repair.sync_pending_media_groups(batch_size=0)


def test_fix_content_disposition_restores_inline(services, repo, storage, make_message) -> None:
    storage.upload(
        "manual.pdf",
        b"%PDF-1.4",
        content_type="application/pdf",
        content_disposition=ContentDisposition.ATTACHMENT,
    )
    message = make_message(
        media_type="document",
        mime_type="application/pdf",
        storage_path="manual.pdf",
        public_url="https://cdn.example.test/media/manual.pdf?download=",
        content_disposition=ContentDisposition.ATTACHMENT,
        processing_state=S.COMPLETED,
    )

    result = services.repair.fix_content_disposition(message.id)

    assert result.success
    assert result.counts == {"fixed": 1}
    fixed = _stored(repo, message.id)
    assert fixed.content_disposition is ContentDisposition.INLINE
    assert fixed.public_url == "https://cdn.example.test/media/manual.pdf"
    assert fixed.processing_state is S.COMPLETED
    entry = repo.get_audit_logs(message_id=message.id)[-1]
    assert entry.event_type is AuditEventType.CONTENT_DISPOSITION_FIXED
    assert entry.metadata["previous"] == "attachment"
    assert entry.metadata["current"] == "inline"


def test_fix_content_disposition_without_stored_object(services, repo, make_message) -> None:
    message = make_message()

    result = services.repair.fix_content_disposition(message.id)

    assert not result.success
    assert result.errors == [f"Message {message.id} has no stored object"]
    assert _events(repo, message.id) == [AuditEventType.REPAIR_FAILED]


def test_fix_content_disposition_unknown_message(services) -> None:
    result = services.repair.fix_content_disposition("nope")

    assert not result.success
    assert result.errors == ["Message not found: nope"]


def test_redownload_media_recovers_failed_download(
    services, repo, fake_telegram, make_message
) -> None:
    message = make_message(
        caption=CAPTION,
        file_id="file-77",
        file_unique_id="uniq-77",
        processing_state=S.ERROR,
        error_message="Media download failed: timeout",
        needs_redownload=True,
        retry_count=1,
    )

    result = services.repair.redownload_media(message.id)

    assert result.success
    assert result.counts == {"redownloaded": 1}
    stored = _stored(repo, message.id)
    assert stored.processing_state is S.PENDING
    assert stored.needs_redownload is False
    assert stored.error_message is None
    assert stored.storage_path == "uniq-77.jpeg"
    assert fake_telegram.downloads == ["files/file-77.bin"]
    assert AuditEventType.MEDIA_REDOWNLOADED in _events(repo, message.id)


def test_redownload_media_keeps_state_of_healthy_message(
    services, repo, make_message
) -> None:
    message = make_message(processing_state=S.COMPLETED)

    services.repair.redownload_media(message.id)

    assert _stored(repo, message.id).processing_state is S.COMPLETED


def test_redownload_media_reports_download_error(
    services, repo, fake_telegram, make_message
) -> None:
    fake_telegram.fail = True
    message = make_message(file_id="file-88")

    result = services.repair.redownload_media(message.id)

    assert not result.success
    assert result.errors == ["getFile failed for file-88"]
    assert _events(repo, message.id) == [AuditEventType.REPAIR_FAILED]


def test_redownload_media_without_bot_token(build, make_message) -> None:
    services = build(telegram_client=None)
    message = make_message()

    result = services.repair.redownload_media(message.id)

    assert result.errors == ["Telegram download is not configured"]


def test_processing_stats(services, make_message) -> None:
    make_message(caption=CAPTION, processing_state=S.COMPLETED)
    make_message(media_group_id="album", processing_state=S.READY_FOR_SYNC)
    make_message(needs_redownload=True, processing_state=S.ERROR)
    make_message(
        caption=CAPTION,
        processing_state=S.PROCESSING_CAPTION,
        processing_started_at=_ago(30),
    )

    stats = services.repair.get_processing_stats()

    assert stats.total_messages == 4
    assert stats.by_state == {
        "completed": 1,
        "ready_for_sync": 1,
        "error": 1,
        "processing_caption": 1,
    }
    assert stats.with_caption == 2
    assert stats.with_analyzed_content == 0
    assert stats.needs_redownload == 1
    assert stats.in_media_groups == 1
    assert stats.stalled == 1


def test_reset_releases_expired_caption_task_leases(services, repo) -> None:
    task = services.task_queue.enqueue(TaskCreate.caption_analysis("m-1", "original"))
    services.task_queue.lease(TaskType.CAPTION_ANALYSIS, limit=1)
    conn = sqlite3.connect(repo.db_path)
    try:
        conn.execute(
            "UPDATE pipeline_tasks SET locked_at = ? WHERE task_id = ?",
            (_ago(30).isoformat(timespec="microseconds"), str(task.task_id)),
        )
        conn.commit()
    finally:
        conn.close()

    reset = services.repair.reset_stuck_messages()

    assert reset.counts["tasks_released"] == 1
    leased = services.task_queue.lease(TaskType.CAPTION_ANALYSIS, limit=1)
    assert [t.task_id for t in leased] == [task.task_id]
    assert leased[0].attempts == 2
