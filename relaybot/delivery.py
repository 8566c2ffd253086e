import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path

import requests

from relaybot.errors import DeliveryError
from relaybot.formatting import format_bytes
from relaybot.models import Artifact
from relaybot.tempfiles import TempDir

logger = logging.getLogger(__name__)

INLINE = "inline"
HOST = "host"
UPLOAD_TIMEOUT_SECONDS = 300


def choose_mode(size: int, threshold: int) -> str:
    return INLINE if size <= threshold else HOST


@dataclasses.dataclass(frozen=True)
class HostedLink:
    provider: str
    url: str


@dataclasses.dataclass(frozen=True)
class DeliveryReceipt:
    mode: str
    link: HostedLink | None = None


class FileHost:
    name = "file host"
    max_size: int | None = None

    def __init__(self, timeout: float = UPLOAD_TIMEOUT_SECONDS, session: requests.Session | None = None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def accepts(self, size: int) -> bool:
        return self.max_size is None or size <= self.max_size

    def upload(self, path: Path) -> str:
        raise NotImplementedError


class GoFileHost(FileHost):
    name = "GoFile.io"
    SERVER_URL = "https://api.gofile.io/getServer"
    UPLOAD_URL_TEMPLATE = "https://{server}.gofile.io/uploadFile"

    def _server(self) -> str:
        try:
            response = self.session.get(self.SERVER_URL, timeout=15)
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as err:
            raise DeliveryError(f"GoFile server request failed: {err}") from err
        if not isinstance(payload, dict):
            payload = {}
        server = (payload.get("data") or {}).get("server")
        if payload.get("status") != "ok" or not server:
            raise DeliveryError("GoFile server not available")
        return server

    def upload(self, path: Path) -> str:
        server = self._server()
        logger.info("Using GoFile server: %s", server)
        try:
            with path.open("rb") as handle:
                response = self.session.post(
                    self.UPLOAD_URL_TEMPLATE.format(server=server),
                    files={"file": (path.name, handle, "video/mp4")},
                    timeout=self.timeout,
                )
            response.raise_for_status()
            payload = response.json()
        except (OSError, requests.RequestException, ValueError) as err:
            raise DeliveryError(f"GoFile upload failed: {err}") from err
        if not isinstance(payload, dict):
            payload = {}
        download_page = (payload.get("data") or {}).get("downloadPage")
        if payload.get("status") != "ok" or not download_page:
            raise DeliveryError("GoFile returned invalid response")
        return download_page


class CatboxHost(FileHost):
    name = "Catbox.moe"
    max_size = 200 * 1024 * 1024
    UPLOAD_URL = "https://catbox.moe/user/api.php"

    def upload(self, path: Path) -> str:
        try:
            with path.open("rb") as handle:
                response = self.session.post(
                    self.UPLOAD_URL,
                    data={"reqtype": "fileupload"},
                    files={"fileToUpload": (path.name, handle, "video/mp4")},
                    timeout=self.timeout,
                )
            response.raise_for_status()
        except (OSError, requests.RequestException) as err:
            raise DeliveryError(f"Catbox upload failed: {err}") from err
        body = (response.text or "").strip()
        if not body.startswith("https://"):
            raise DeliveryError("Catbox returned invalid response")
        return body


def default_hosts(timeout: float = UPLOAD_TIMEOUT_SECONDS) -> list[FileHost]:
    return [GoFileHost(timeout=timeout), CatboxHost(timeout=timeout)]


def upload_to_hosts(path: Path, hosts: Sequence[FileHost], tag: str = "unknown") -> HostedLink:
    """Try each host in order and return the first link; blocking."""
    size = path.stat().st_size
    failures: list[str] = []
    for host in hosts:
        if not host.accepts(size):
            logger.warning("[%s] File too large for %s (%s)", tag, host.name, format_bytes(size))
            failures.append(f"{host.name}: file too large")
            continue
        logger.info("[%s] Uploading to %s...", tag, host.name)
        try:
            url = host.upload(path)
        except DeliveryError as err:
            logger.warning("[%s] %s upload failed: %s", tag, host.name, err)
            failures.append(f"{host.name}: {err}")
            continue
        logger.info("[%s] %s upload successful: %s", tag, host.name, url)
        return HostedLink(provider=host.name, url=url)
    raise DeliveryError("All file host uploads failed" + (f" ({'; '.join(failures)})" if failures else ""))


class DeliverySink:
    """Presents a finished artifact inline or as a hosted link, then drops the file.

    Failures surface as DeliveryError to the caller; they are never fed back
    into the download queue.
    """

    def __init__(self, threshold: int, hosts: Sequence[FileHost] | None = None, temp_dir: TempDir | None = None):
        self.threshold = threshold
        self.hosts = list(default_hosts() if hosts is None else hosts)
        self.temp_dir = temp_dir

    async def deliver(
        self,
        artifact: Artifact,
        send_inline: Callable[[Artifact], Awaitable[object]],
        send_link: Callable[[Artifact, HostedLink], Awaitable[object]],
        tag: str = "unknown",
    ) -> DeliveryReceipt:
        mode = choose_mode(artifact.size, self.threshold)
        try:
            if mode == INLINE:
                logger.info("[%s] Sending inline: %s (%s)", tag, artifact.filename, format_bytes(artifact.size))
                await send_inline(artifact)
                return DeliveryReceipt(mode=INLINE)

            logger.info("[%s] File too large (%s), uploading to file host...", tag, format_bytes(artifact.size))
            link = await asyncio.to_thread(upload_to_hosts, artifact.path, self.hosts, tag)
            await send_link(artifact, link)
            return DeliveryReceipt(mode=HOST, link=link)
        except DeliveryError:
            raise
        except Exception as err:
            raise DeliveryError(f"Upload failed: {err}") from err
        finally:
            if self.temp_dir is not None:
                self.temp_dir.remove(artifact.path)
