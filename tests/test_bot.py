import os
import time
from unittest.mock import AsyncMock, MagicMock

import pytest
from telegram.error import BadRequest

from bot import Relay, UrlGate, failure_reason, resolve_sender_name
from relaybot.errors import ExtractionError, QueueFullError
from relaybot.models import Artifact, Job, Metadata

TIKTOK_URL = "https://www.tiktok.com/@creator/video/7301234567890123456"


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def relay(settings):
    instance = Relay(settings)
    instance.bot = AsyncMock()
    yield instance
    instance.store.close()


def make_job(**context):
    caller_context = {"chat_id": 10, "status_message_id": 20, "requester": "@alice", "source_url": TIKTOK_URL}
    caller_context.update(context)
    return Job(url=TIKTOK_URL, platform="tiktok", caller_context=caller_context)


class TestUrlGate:
    @pytest.mark.asyncio
    async def test_blocks_in_flight_and_recent_links(self):
        clock = FakeClock()
        gate = UrlGate(ttl=300, clock=clock)

        assert await gate.try_acquire(TIKTOK_URL)
        assert not await gate.try_acquire(TIKTOK_URL)

        await gate.release(TIKTOK_URL)
        assert not await gate.try_acquire(TIKTOK_URL)

        clock.now += 301
        assert await gate.try_acquire(TIKTOK_URL)

    @pytest.mark.asyncio
    async def test_release_without_marking_seen(self):
        gate = UrlGate(ttl=300, clock=FakeClock())
        await gate.try_acquire(TIKTOK_URL)
        await gate.release(TIKTOK_URL, mark_seen=False)
        assert await gate.try_acquire(TIKTOK_URL)


def test_failure_reason():
    assert failure_reason(ExtractionError("Sign in to confirm you're not a bot")).startswith("login required")
    assert failure_reason(ExtractionError("Extractor timed out")) == "download timed out"
    assert failure_reason(ExtractionError("HTTP Error 404:\n Not Found")) == "HTTP Error 404: Not Found"


def test_resolve_sender_name():
    assert resolve_sender_name(None) == "unknown"
    assert resolve_sender_name(MagicMock(username="alice")) == "@alice"
    assert resolve_sender_name(MagicMock(username=None, full_name="Alice A")) == "Alice A"


class TestIntake:
    def make_update(self, text):
        status_msg = MagicMock(message_id=55)
        status_msg.edit_text = AsyncMock()
        message = MagicMock(text=text)
        message.reply_text = AsyncMock(return_value=status_msg)
        update = MagicMock()
        update.effective_message = message
        update.effective_chat = MagicMock(id=10)
        update.effective_user = MagicMock(username="alice")
        return update, message, status_msg

    @pytest.mark.asyncio
    async def test_supported_links_are_queued_with_caller_context(self, relay):
        relay.queue.submit = MagicMock(side_effect=lambda url, platform, caller_context: Job(url, platform))
        update, message, _ = self.make_update(f"look {TIKTOK_URL} and https://example.com/x")

        await relay.handle_message(update, MagicMock())

        message.reply_text.assert_awaited_once_with("Queued...")
        relay.queue.submit.assert_called_once_with(
            TIKTOK_URL,
            platform="tiktok",
            caller_context={"chat_id": 10, "status_message_id": 55, "requester": "@alice", "source_url": TIKTOK_URL},
        )

    @pytest.mark.asyncio
    async def test_duplicate_link_is_ignored(self, relay):
        relay.queue.submit = MagicMock(side_effect=lambda url, platform, caller_context: Job(url, platform))
        update, message, _ = self.make_update(TIKTOK_URL)

        await relay.handle_message(update, MagicMock())
        await relay.handle_message(update, MagicMock())

        assert relay.queue.submit.call_count == 1

    @pytest.mark.asyncio
    async def test_full_queue_edits_status_and_frees_link(self, relay):
        relay.queue.submit = MagicMock(side_effect=QueueFullError("Queue is full (50/50)"))
        update, _, status_msg = self.make_update(TIKTOK_URL)

        await relay.handle_message(update, MagicMock())

        status_msg.edit_text.assert_awaited_once()
        assert "Queue is full" in status_msg.edit_text.call_args.args[0]
        assert await relay.url_gate.try_acquire(TIKTOK_URL)


class TestLifecycleMessages:
    @pytest.mark.asyncio
    async def test_reattach_depends_on_status_message(self, relay):
        job = make_job()
        assert await relay.reattach(job)

        relay.bot.edit_message_text.side_effect = BadRequest("Message to edit not found")
        assert not await relay.reattach(job)

        relay.bot.edit_message_text.side_effect = BadRequest("Message is not modified")
        assert await relay.reattach(job)

    @pytest.mark.asyncio
    async def test_reattach_without_context_fails(self, relay):
        job = Job(url=TIKTOK_URL, platform="tiktok")
        assert not await relay.reattach(job)

    @pytest.mark.asyncio
    async def test_progress_updates_are_throttled(self, relay):
        job = make_job()
        await relay.on_download_start(job)

        assert relay.on_download_progress(job, 3.0) is None
        await relay.on_download_progress(job, 7.5)
        assert relay.on_download_progress(job, 9.0) is None
        await relay.on_download_progress(job, 52.0)

        texts = [call.kwargs["text"] for call in relay.bot.edit_message_text.await_args_list]
        assert texts[0] == "Downloading..."
        assert texts[1].endswith(" 8%")
        assert texts[2].endswith(" 52%")
        assert len(texts) == 3

    @pytest.mark.asyncio
    async def test_failure_reports_reason_and_frees_link(self, relay):
        job = make_job()
        await relay.url_gate.try_acquire(job.url)

        await relay.on_download_error(job, ExtractionError.classify("ERROR: Private video"))

        edit = relay.bot.edit_message_text.await_args
        assert edit.kwargs["text"].startswith("Failed: ERROR: Private video")
        send = relay.bot.send_message.await_args
        assert send.kwargs["chat_id"] == 10
        assert "Private video" in send.kwargs["text"]
        assert TIKTOK_URL not in relay.url_gate.processing

    @pytest.mark.asyncio
    async def test_completed_small_file_is_sent_as_video(self, relay, temp_dir):
        job = make_job()
        path = temp_dir.path / "creator_20240101_0000_tag.mp4"
        path.write_bytes(b"video")
        artifact = Artifact(path=path, size=5, platform="tiktok", strategy="extractor", metadata=Metadata(uploader="creator"))

        await relay.on_download_complete(job, artifact)

        send = relay.bot.send_video.await_args
        assert send.kwargs["chat_id"] == 10
        assert "@creator" in send.kwargs["caption"]
        relay.bot.delete_message.assert_awaited_once_with(chat_id=10, message_id=20)
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_dropped_job_is_announced(self, relay):
        job = make_job()
        await relay.url_gate.try_acquire(job.url)

        await relay.on_queue_dropped(job, "memory pressure")

        text = relay.bot.edit_message_text.await_args.kwargs["text"]
        assert text == "Dropped: memory pressure. Please send the link again later."
        assert await relay.url_gate.try_acquire(job.url)


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_cleanup_trims_oversized_temp_dir(self, make_settings, temp_dir):
        relay = Relay(make_settings(max_temp_bytes=1000))
        try:
            for index in range(4):
                path = temp_dir.path / f"clip{index}.mp4"
                path.write_bytes(b"x" * 400)
                stamp = time.time() - (10 - index) * 60
                os.utime(path, (stamp, stamp))

            await relay.run_cleanup(MagicMock())

            assert sorted(path.name for path in temp_dir.path.iterdir()) == ["clip3.mp4"]
        finally:
            relay.store.close()

    @pytest.mark.asyncio
    async def test_stats_reports_temp_usage(self, relay, temp_dir):
        (temp_dir.path / "clip.mp4").write_bytes(b"x" * 2048)
        message = MagicMock()
        message.reply_text = AsyncMock()
        update = MagicMock(effective_message=message)

        await relay.handle_stats(update, MagicMock())

        text = message.reply_text.await_args.args[0]
        assert "Temp files: 2 KB" in text
