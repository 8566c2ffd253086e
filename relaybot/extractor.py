import asyncio
import json
import logging
import threading
import time
from pathlib import Path

from relaybot.config import Settings
from relaybot.errors import ExtractionError
from relaybot.fallbacks import FallbackApi, default_fallbacks, stream_to_file
from relaybot.formatting import format_bytes, sanitize_filename, shorten_text
from relaybot.models import Artifact, Job, Metadata, ProgressCallback
from relaybot.platforms import FormatPolicy, classify
from relaybot.runner import ProgressTracker, ToolResult, run_tool
from relaybot.tempfiles import TempDir

logger = logging.getLogger(__name__)

PRIMARY_STRATEGY = "extractor"
PROGRESS_TEMPLATE = "download:[%(progress._percent_str)s]"


def build_filename(uploader: str | None, tag: str) -> str:
    date_tag = time.strftime("%Y%m%d_%H%M")
    return f"{sanitize_filename(uploader or 'unknown_user')}_{date_tag}_{tag}.mp4"


def metadata_from_info(info: dict, url: str) -> Metadata:
    return Metadata(
        title=info.get("title") or "video",
        uploader=info.get("uploader") or info.get("uploader_id") or info.get("channel") or "unknown_user",
        uploader_id=info.get("uploader_id") or info.get("channel_id"),
        description=shorten_text(info.get("description") or info.get("title"), 200) or None,
        duration=info.get("duration") or 0,
        resolution=info.get("resolution"),
        filesize=info.get("filesize") or info.get("filesize_approx"),
        url=url,
    )


class Extractor:
    """Runs the primary extractor process and the HTTP fallback chain for one URL."""

    def __init__(
        self,
        settings: Settings,
        temp_dir: TempDir,
        fallbacks: dict[str, FallbackApi] | None = None,
        tool_runner=run_tool,
    ):
        self.settings = settings
        self.temp_dir = temp_dir
        self.command = tuple(settings.extractor_command)
        if fallbacks is None:
            fallbacks = default_fallbacks(settings.rapidapi_key, settings.fallback_timeout)
        self.fallbacks = fallbacks
        self.run_tool = tool_runner

    async def check_available(self) -> str | None:
        try:
            result = await self.run_tool([*self.command, "--version"], timeout=15)
        except OSError as err:
            logger.error("Extractor not available (%s): %s", " ".join(self.command), err)
            return None
        if not result.ok:
            logger.error("Extractor not available: %s", result.last_error_line or f"exit code {result.returncode}")
            return None
        version = result.stdout.strip()
        logger.info("Extractor available: version=%s", version)
        return version

    def _cookie_args(self, policy: FormatPolicy) -> list[str]:
        if not policy.cookie_file:
            return []
        cookie_path = Path(self.settings.cookies_dir) / policy.cookie_file
        if cookie_path.exists():
            return ["--cookies", str(cookie_path)]
        logger.debug("Cookies file is missing: %s", cookie_path)
        return []

    def metadata_args(self, url: str, policy: FormatPolicy) -> list[str]:
        return [
            *self.command,
            "--dump-json",
            "--no-warnings",
            "--no-playlist",
            "--socket-timeout", "30",
            *self._cookie_args(policy),
            "--",
            url,
        ]

    def download_args(self, url: str, policy: FormatPolicy, destination: Path) -> list[str]:
        args = [
            *self.command,
            "--format", policy.format_selector,
            "--no-warnings",
            "--no-playlist",
            "--socket-timeout", "60",
            "--retries", "10",
            "--fragment-retries", "20",
            "--user-agent", policy.user_agent,
            "--add-header", "Accept:*/*",
            "--add-header", "Accept-Language:en-US,en;q=0.9",
            "--merge-output-format", "mp4",
            "--concurrent-fragments", str(policy.concurrent_fragments),
            "--buffer-size", "32K",
            "--no-part",
        ]
        if policy.referer:
            args += ["--referer", policy.referer]
        if policy.http_chunk_size:
            args += ["--http-chunk-size", policy.http_chunk_size]
        if self.settings.extractor_impersonate and policy.impersonate:
            args += ["--impersonate", policy.impersonate]
        args += list(policy.extra_args)
        args += self._cookie_args(policy)
        args += [
            "-o", str(destination),
            "--newline",
            "--progress",
            "--progress-template", PROGRESS_TEMPLATE,
            "--",
            url,
        ]
        return args

    async def probe_metadata(self, url: str, policy: FormatPolicy, tag: str = "unknown") -> Metadata:
        # Some platforms refuse metadata probes but still serve the media, so
        # every failure here degrades to placeholder metadata.
        try:
            result = await self.run_tool(
                self.metadata_args(url, policy),
                timeout=self.settings.info_timeout,
                max_buffer=self.settings.max_buffer_bytes,
            )
            if not result.ok:
                raise self._tool_error(result, "Metadata probe")
            lines = [line for line in result.stdout.splitlines() if line.strip()]
            info = json.loads(lines[-1]) if lines else None
            if not isinstance(info, dict):
                raise ValueError("metadata probe returned no JSON object")
        except (OSError, ValueError, ExtractionError) as err:
            logger.warning("[%s] Failed to get video info, continuing with placeholder metadata: %s", tag, err)
            return Metadata(url=url)

        metadata = metadata_from_info(info, url)
        logger.info("[%s] Video info retrieved: %s", tag, metadata.title)
        return metadata

    def _tool_error(self, result: ToolResult, action: str) -> ExtractionError:
        last_line = result.last_error_line
        if result.timed_out:
            message = f"{action} timed out"
        elif result.overflowed:
            message = f"{action} output exceeded {format_bytes(self.settings.max_buffer_bytes)}"
        else:
            message = f"{action} exited with code {result.returncode}"
        if last_line:
            message = f"{message}: {last_line}"
        return ExtractionError.classify(message, raw_output=result.diagnostics, strategy=PRIMARY_STRATEGY)

    def _verify(self, destination: Path, strategy: str) -> int:
        if not destination.exists():
            raise ExtractionError.classify("Downloaded file not found", strategy=strategy)
        size = destination.stat().st_size
        if size == 0:
            raise ExtractionError.classify("Downloaded file is empty", strategy=strategy)
        return size

    def _discard(self, destination: Path) -> None:
        self.temp_dir.remove_matching(destination.stem)

    async def _run_primary(self, url: str, policy: FormatPolicy, destination: Path, tracker: ProgressTracker) -> int:
        try:
            result = await self.run_tool(
                self.download_args(url, policy, destination),
                timeout=self.settings.download_timeout,
                max_buffer=self.settings.max_buffer_bytes,
                on_stdout_line=tracker.feed,
                keep_stdout=False,
            )
        except OSError as err:
            raise ExtractionError.classify(f"Could not start extractor: {err}", strategy=PRIMARY_STRATEGY) from err
        if not result.ok:
            raise self._tool_error(result, "Extractor")
        return self._verify(destination, PRIMARY_STRATEGY)

    async def _run_fallback(
        self, api: FallbackApi, url: str, destination: Path, tracker: ProgressTracker
    ) -> tuple[int, Metadata]:
        loop = asyncio.get_running_loop()
        stop = threading.Event()

        def report(percent: float) -> None:
            if not stop.is_set():
                tracker.report(percent)

        def on_fraction(fraction: float) -> None:
            if not stop.is_set():
                loop.call_soon_threadsafe(report, fraction * 100)

        try:
            media = await asyncio.wait_for(asyncio.to_thread(api.resolve, url), timeout=self.settings.fallback_timeout)
            stream = asyncio.ensure_future(
                asyncio.to_thread(
                    stream_to_file,
                    media.media_url,
                    destination,
                    self.settings.fallback_timeout,
                    api.name,
                    on_fraction=on_fraction,
                    cancel_event=stop,
                )
            )
            done, _ = await asyncio.wait({stream}, timeout=self.settings.download_timeout)
            if not done:
                stop.set()
                # The worker exits at its next chunk; the per-read timeout bounds this wait.
                await asyncio.wait({stream})
                if not stream.cancelled():
                    stream.exception()
                raise ExtractionError.classify(f"{api.name} fallback timed out", strategy=api.name)
            stream.result()
        except ExtractionError:
            raise
        except asyncio.TimeoutError as err:
            raise ExtractionError.classify(f"{api.name} fallback timed out", strategy=api.name) from err
        except Exception as err:
            raise ExtractionError.classify(f"{api.name} fallback failed: {err}", strategy=api.name) from err
        finally:
            stop.set()
        size = self._verify(destination, api.name)
        metadata = Metadata(
            title=media.title or "video",
            uploader=sanitize_filename(media.uploader),
            description=shorten_text(media.title, 200) or None,
            resolution=media.resolution,
            url=url,
        )
        return size, metadata

    async def execute(
        self,
        url: str,
        policy: FormatPolicy,
        on_progress: ProgressCallback | None = None,
        *,
        tag: str = "unknown",
        platform: str | None = None,
    ) -> Artifact:
        """Produce one verified file for ``url`` or raise a classified ExtractionError.

        The primary extractor runs first; on failure each fallback API named by
        the policy is tried in order and the first verified file wins. When
        everything fails, the last attempted strategy's error is raised.
        """
        platform = platform or classify(url).platform.value
        self.temp_dir.ensure()
        metadata = await self.probe_metadata(url, policy, tag)
        destination = self.temp_dir.path / build_filename(metadata.uploader, tag)
        tracker = ProgressTracker(on_progress)

        logger.info("[%s] Downloading with extractor: %s", tag, destination.name)
        try:
            size = await self._run_primary(url, policy, destination, tracker)
        except ExtractionError as err:
            self._discard(destination)
            logger.error(
                "[%s] Extractor download failed: %s (permanent=%s)", tag, err, err.permanent
            )
            last_error = err
        except BaseException:
            self._discard(destination)
            raise
        else:
            tracker.finish()
            logger.info("[%s] Download completed: %s (%s)", tag, destination.name, format_bytes(size))
            return Artifact(path=destination, size=size, platform=platform, strategy=PRIMARY_STRATEGY, metadata=metadata)

        for name in policy.fallbacks:
            api = self.fallbacks.get(name)
            if api is None or not api.available():
                logger.info("[%s] Fallback %s is not configured, skipping", tag, name)
                continue
            logger.info("[%s] Switching to %s fallback...", tag, name)
            try:
                size, fallback_metadata = await self._run_fallback(api, url, destination, tracker)
            except ExtractionError as err:
                self._discard(destination)
                logger.error("[%s] %s fallback failed: %s (permanent=%s)", tag, name, err, err.permanent)
                last_error = err
                continue
            except BaseException:
                self._discard(destination)
                raise
            tracker.finish()
            logger.info("[%s] Downloaded via %s: %s (%s)", tag, name, destination.name, format_bytes(size))
            return Artifact(path=destination, size=size, platform=platform, strategy=name, metadata=fallback_metadata)

        raise last_error

    async def run_job(self, job: Job, on_progress: ProgressCallback | None = None) -> Artifact:
        classification = classify(job.url)
        return await self.execute(
            job.url,
            classification.policy,
            on_progress,
            tag=job.tag,
            platform=job.platform or classification.platform.value,
        )
