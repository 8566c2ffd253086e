"""
Usage (local):
  export BOT_TOKEN="..."
  python bot.py
"""

import asyncio
import html
import logging
import time

from telegram import LinkPreviewOptions, Update
from telegram.constants import ParseMode
from telegram.error import BadRequest
from telegram.ext import Application, CommandHandler, ContextTypes, MessageHandler, filters

from relaybot.config import Settings
from relaybot.delivery import DeliverySink, HostedLink
from relaybot.errors import ConfigError, DeliveryError, ExtractionError, QueueFullError
from relaybot.extractor import Extractor
from relaybot.formatting import (
    build_caption,
    build_download_error_message,
    format_bytes,
    format_uptime,
    normalize_error_reason,
    progress_bar,
)
from relaybot.guards import DiskGuard, MemoryGuard
from relaybot.logs import configure_logging
from relaybot.models import Artifact, Job
from relaybot.platforms import find_supported_links
from relaybot.scheduler import (
    DOWNLOAD_COMPLETE,
    DOWNLOAD_ERROR,
    DOWNLOAD_PROGRESS,
    DOWNLOAD_START,
    QUEUE_DROPPED,
    DownloadQueue,
)
from relaybot.store import JobStore
from relaybot.tempfiles import TempDir

logger = logging.getLogger("video-relay")

SEEN_URL_TTL_SECONDS = 300
PROGRESS_STEP = 5
NO_PREVIEW = LinkPreviewOptions(is_disabled=True)
LOGIN_PHRASES = (
    "login required",
    "sign in",
    "age-restricted",
    "age restricted",
    "confirm you're not a bot",
    "confirm you are not a bot",
)


class UrlGate:
    """Rejects a link while it is in flight and for a short while after."""

    def __init__(self, ttl: float = SEEN_URL_TTL_SECONDS, clock=time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self.seen: dict[str, float] = {}
        self.processing: set[str] = set()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        expired = [url for url, expires_at in self.seen.items() if expires_at <= now]
        for url in expired:
            self.seen.pop(url, None)

    async def try_acquire(self, url: str) -> bool:
        now = self.clock()
        async with self._lock:
            self._prune(now)
            if url in self.processing:
                return False
            expires_at = self.seen.get(url)
            if expires_at and expires_at > now:
                return False
            self.processing.add(url)
            return True

    async def release(self, url: str, mark_seen: bool = True) -> None:
        now = self.clock()
        async with self._lock:
            self.processing.discard(url)
            if mark_seen:
                self.seen[url] = now + self.ttl
            self._prune(now)


def resolve_sender_name(user) -> str:
    if not user:
        return "unknown"
    if user.username:
        return f"@{user.username}"
    return user.full_name or "unknown"


def failure_reason(err: Exception) -> str:
    text = str(err or "")
    lowered = f"{text} {getattr(err, 'raw_output', '')}".lower()
    if any(phrase in lowered for phrase in LOGIN_PHRASES):
        return "login required: cookies are missing or expired"
    if "downloaded file not found" in lowered:
        return "download failed: file not found after extractor run"
    if "timed out" in lowered:
        return "download timed out"
    return normalize_error_reason(text)


class Relay:
    """Wires the download queue to Telegram: intake, status updates, delivery."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.temp_dir = TempDir(settings.temp_dir)
        self.store = JobStore(settings.db_path)
        self.extractor = Extractor(settings, self.temp_dir)
        self.queue = DownloadQueue(settings, self.store, self.extractor.run_job)
        self.delivery = DeliverySink(settings.inline_limit_bytes, temp_dir=self.temp_dir)
        self.memory_guard = MemoryGuard(settings, self.temp_dir, self.queue)
        self.disk_guard = DiskGuard(settings, self.temp_dir)
        self.url_gate = UrlGate()
        self.bot = None
        self._progress_marks: dict[str, int] = {}

        self.queue.subscribe(DOWNLOAD_START, self.on_download_start)
        self.queue.subscribe(DOWNLOAD_PROGRESS, self.on_download_progress)
        self.queue.subscribe(DOWNLOAD_COMPLETE, self.on_download_complete)
        self.queue.subscribe(DOWNLOAD_ERROR, self.on_download_error)
        self.queue.subscribe(QUEUE_DROPPED, self.on_queue_dropped)

    # -------------------------
    # Status messages
    # -------------------------
    async def edit_status(self, job: Job, text: str, parse_mode: str | None = None) -> bool:
        context = job.caller_context
        chat_id = context.get("chat_id")
        message_id = context.get("status_message_id")
        if self.bot is None or chat_id is None or message_id is None:
            return False
        try:
            await self.bot.edit_message_text(
                chat_id=chat_id,
                message_id=message_id,
                text=text,
                parse_mode=parse_mode,
                link_preview_options=NO_PREVIEW,
            )
            return True
        except BadRequest as edit_err:
            if "not modified" in str(edit_err).lower():
                return True
            logger.info("[%s] Could not edit status message: %s", job.tag, edit_err)
            return False
        except Exception as edit_err:
            logger.info("[%s] Could not edit status message: %s", job.tag, edit_err)
            return False

    async def delete_status(self, job: Job) -> None:
        context = job.caller_context
        try:
            await self.bot.delete_message(chat_id=context["chat_id"], message_id=context["status_message_id"])
        except Exception as delete_err:
            logger.info("[%s] Could not delete status message: %s", job.tag, delete_err)

    async def reattach(self, job: Job) -> bool:
        return await self.edit_status(job, "Resuming download after restart...")

    # -------------------------
    # Queue events
    # -------------------------
    def on_download_start(self, job: Job):
        self._progress_marks[job.tag] = 0
        text = "Downloading..."
        if job.retry_count:
            text += f" (retry {job.retry_count}/{self.settings.max_retries})"
        return self.edit_status(job, text)

    def on_download_progress(self, job: Job, percent: float):
        mark = int(percent // PROGRESS_STEP) * PROGRESS_STEP
        if mark <= self._progress_marks.get(job.tag, 0):
            return None
        self._progress_marks[job.tag] = mark
        return self.edit_status(job, f"Downloading... {progress_bar(percent)} {percent:.0f}%")

    async def on_download_complete(self, job: Job, artifact: Artifact) -> None:
        self._progress_marks.pop(job.tag, None)
        context = job.caller_context
        caption = build_caption(
            context.get("source_url") or job.url,
            context.get("requester") or "unknown",
            uploader=artifact.metadata.uploader,
            resolution=artifact.metadata.resolution,
            size=artifact.size,
        )

        async def send_inline(item: Artifact) -> None:
            await self.edit_status(job, "Uploading...")
            with item.path.open("rb") as f:
                await self.bot.send_video(
                    chat_id=context["chat_id"],
                    video=f,
                    filename=item.filename,
                    supports_streaming=True,
                    caption=caption,
                    parse_mode=ParseMode.HTML,
                )
            await self.delete_status(job)

        async def send_link(item: Artifact, link: HostedLink) -> None:
            safe_url = html.escape(link.url, quote=True)
            text = (
                f"{caption}\n\nFile too large for Telegram\n"
                f"Host: {html.escape(link.provider)}\n"
                f'Download: <a href="{safe_url}">{safe_url}</a>'
            )
            if not await self.edit_status(job, text, parse_mode=ParseMode.HTML):
                await self.bot.send_message(
                    chat_id=context["chat_id"], text=text, parse_mode=ParseMode.HTML, link_preview_options=NO_PREVIEW
                )

        try:
            receipt = await self.delivery.deliver(artifact, send_inline, send_link, tag=job.tag)
            logger.info("[%s] Delivered (%s)", job.tag, receipt.mode)
        except DeliveryError as err:
            logger.error("[%s] Delivery failed: %s", job.tag, err)
            await self.edit_status(job, f"Upload failed ({format_bytes(artifact.size)}): {normalize_error_reason(str(err))}")
        finally:
            await self.url_gate.release(job.url)

    async def on_download_error(self, job: Job, err: ExtractionError) -> None:
        self._progress_marks.pop(job.tag, None)
        reason = failure_reason(err)
        await self.edit_status(job, f"Failed: {reason}")
        chat_id = job.caller_context.get("chat_id")
        if self.bot is not None and chat_id is not None:
            try:
                await self.bot.send_message(
                    chat_id=chat_id,
                    text=build_download_error_message(job.caller_context.get("source_url") or job.url, reason),
                    parse_mode=ParseMode.HTML,
                    link_preview_options=NO_PREVIEW,
                )
            except Exception as send_err:
                logger.info("[%s] Could not send failure notice: %s", job.tag, send_err)
        await self.url_gate.release(job.url)

    async def on_queue_dropped(self, job: Job, reason: str) -> None:
        self._progress_marks.pop(job.tag, None)
        await self.edit_status(job, f"Dropped: {reason}. Please send the link again later.")
        await self.url_gate.release(job.url, mark_seen=False)

    # -------------------------
    # Telegram handlers
    # -------------------------
    async def handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        chat = update.effective_chat
        if not message or not message.text or not chat:
            return

        sender_name = resolve_sender_name(update.effective_user)
        for url, platform in find_supported_links(message.text):
            if not await self.url_gate.try_acquire(url):
                logger.info("Skipping duplicate URL: chat_id=%s url=%s", chat.id, url)
                continue

            status_msg = await message.reply_text("Queued...")
            caller_context = {
                "chat_id": chat.id,
                "status_message_id": status_msg.message_id,
                "requester": sender_name,
                "source_url": url,
            }
            try:
                job = self.queue.submit(url, platform=platform.value, caller_context=caller_context)
            except QueueFullError as err:
                logger.warning("Rejected URL: chat_id=%s url=%s reason=%s", chat.id, url, err)
                await self.url_gate.release(url, mark_seen=False)
                try:
                    await status_msg.edit_text("Queue is full, try again in a few minutes.")
                except Exception as edit_err:
                    logger.info("Could not edit status message: %s", edit_err)
                continue
            logger.info("[%s] Queued: chat_id=%s url=%s platform=%s", job.tag, chat.id, url, platform.value)

    async def handle_stats(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        if not message:
            return
        stats = self.queue.get_stats()
        memory = self.memory_guard.status()
        disk = self.disk_guard.status()
        lines = [
            "<b>Relay statistics</b>",
            f"Uptime: {format_uptime(stats['uptime'])}",
            f"Downloads: {stats['total_downloads']} ({stats['successful_downloads']} ok, "
            f"{stats['failed_downloads']} failed, {stats['success_rate']})",
            f"Transferred: {format_bytes(stats['total_bytes'])}",
            f"Queue: {stats['queue_size']} waiting, {stats['active_downloads']} active",
            f"Memory: {format_bytes(memory['rss'])} ({memory['status']})",
            f"Temp files: {format_bytes(self.temp_dir.total_size())}",
        ]
        if disk.get("available"):
            lines.append(f"Disk: {disk['usage']}% used, {format_bytes(disk['free'])} free ({disk['status']})")
        for platform, counts in sorted(stats["by_platform"].items()):
            lines.append(f"{html.escape(platform)}: {counts['success']}/{counts['total']} ok")
        await message.reply_text("\n".join(lines), parse_mode=ParseMode.HTML)

    async def handle_queue(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        if not message:
            return
        status = self.queue.get_queue_status()
        lines = [
            f"Queue: {status['size']}/{status['max_size']} waiting, "
            f"{status['active']}/{status['max_concurrent']} active"
        ]
        if status["paused"]:
            lines.append("Paused while restoring jobs from the last run.")
        for position, item in enumerate(status["items"][:10], start=1):
            lines.append(f"{position}. {item['platform']} (retries: {item['retry_count']})")
        await message.reply_text("\n".join(lines))

    # -------------------------
    # Periodic jobs and lifecycle
    # -------------------------
    async def log_heartbeat(self, _: ContextTypes.DEFAULT_TYPE) -> None:
        status = self.queue.get_queue_status()
        logger.info("Bot is listening... (queued=%s active=%s)", status["size"], status["active"])

    async def run_cleanup(self, _: ContextTypes.DEFAULT_TYPE) -> None:
        self.temp_dir.cleanup_older_than(self.settings.temp_max_age)
        self.temp_dir.trim_to_size(self.settings.max_temp_bytes)
        self.store.purge_older_than(self.settings.record_retention_days)

    async def post_init(self, app: Application) -> None:
        self.bot = app.bot
        self.temp_dir.ensure()
        await self.extractor.check_available()
        self.memory_guard.start()
        self.disk_guard.start()
        await self.queue.resume(self.reattach)

    async def post_shutdown(self, app: Application) -> None:
        await self.memory_guard.stop()
        await self.disk_guard.stop()
        await self.queue.shutdown()
        self.store.close()


# -------------------------
# Main
# -------------------------
def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    if not settings.bot_token:
        raise ConfigError("BOT_TOKEN is required.")

    relay = Relay(settings)
    app = (
        Application.builder()
        .token(settings.bot_token)
        .connect_timeout(60)
        .read_timeout(300)
        .write_timeout(300)
        .pool_timeout(60)
        .post_init(relay.post_init)
        .post_shutdown(relay.post_shutdown)
        .build()
    )

    app.add_handler(CommandHandler("stats", relay.handle_stats))
    app.add_handler(CommandHandler("queue", relay.handle_queue))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, relay.handle_message))

    app.job_queue.run_repeating(relay.log_heartbeat, interval=settings.heartbeat_interval, first=0)
    app.job_queue.run_repeating(relay.run_cleanup, interval=settings.cleanup_interval, first=60)
    logger.info("Bot started. Polling and waiting for updates...")
    app.run_polling(close_loop=False)


if __name__ == "__main__":
    main()
