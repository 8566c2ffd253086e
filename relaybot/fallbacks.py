import dataclasses
import logging
import threading
from collections.abc import Callable
from pathlib import Path

import requests

from relaybot.errors import ExtractionError
from relaybot.platforms import CHROME_USER_AGENT

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


@dataclasses.dataclass(frozen=True)
class FallbackMedia:
    media_url: str
    uploader: str
    title: str | None = None
    resolution: str | None = None


def normalize_api_error(err: Exception, prefix: str, strategy: str) -> ExtractionError:
    if isinstance(err, ExtractionError):
        return err
    response = getattr(err, "response", None)
    status_code = getattr(response, "status_code", None)
    pieces = [prefix]
    if status_code:
        pieces.append(f"status {status_code}")
    if str(err):
        pieces.append(str(err))
    return ExtractionError.classify(" - ".join(pieces), strategy=strategy, status_code=status_code)


class FallbackApi:
    """A third-party HTTP API that resolves a post URL to a direct media URL."""

    name = "fallback"

    def __init__(self, timeout: float = 30.0, session: requests.Session | None = None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def available(self) -> bool:
        return True

    def resolve(self, url: str) -> FallbackMedia:
        raise NotImplementedError

    def _post_json(self, endpoint: str, **kwargs):
        try:
            response = self.session.post(endpoint, timeout=self.timeout, **kwargs)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as err:
            raise normalize_api_error(err, f"{self.name} request failed", self.name) from err
        except ValueError as err:
            raise ExtractionError.classify(f"{self.name} returned invalid JSON", strategy=self.name) from err


class TikwmFallback(FallbackApi):
    name = "tikwm"
    API_URL = "https://www.tikwm.com/api/"

    def resolve(self, url: str) -> FallbackMedia:
        payload = self._post_json(
            self.API_URL,
            data={"url": url, "hd": 1},
            headers={"User-Agent": CHROME_USER_AGENT},
        )
        if not isinstance(payload, dict):
            payload = {}
        data = payload.get("data") or {}
        media_url = data.get("hdplay") or data.get("play")
        if payload.get("code") != 0 or not media_url:
            reason = payload.get("msg")
            raise ExtractionError.classify(
                f"TikTok API returned invalid response: {reason or 'no media url'}", strategy=self.name
            )
        if media_url.startswith("/"):
            media_url = "https://www.tikwm.com" + media_url
        author = data.get("author") or {}
        return FallbackMedia(
            media_url=media_url,
            uploader=author.get("unique_id") or "tiktok_user",
            title=data.get("title") or None,
            resolution="720p",
        )


class RapidApiInstagramFallback(FallbackApi):
    name = "rapidapi_instagram"
    API_HOST = "instagram120.p.rapidapi.com"
    API_URL = f"https://{API_HOST}/api/instagram/links"

    def __init__(self, api_key: str | None, timeout: float = 30.0, session: requests.Session | None = None):
        super().__init__(timeout=timeout, session=session)
        self.api_key = api_key

    def available(self) -> bool:
        return bool(self.api_key)

    def resolve(self, url: str) -> FallbackMedia:
        if not self.api_key:
            raise ExtractionError.classify("Instagram API requires RAPIDAPI_KEY", strategy=self.name)
        payload = self._post_json(
            self.API_URL,
            json={"url": url},
            headers={
                "x-rapidapi-key": self.api_key,
                "x-rapidapi-host": self.API_HOST,
                "Content-Type": "application/json",
            },
        )
        if not isinstance(payload, list) or not payload:
            raise ExtractionError.classify("Instagram API returned invalid data structure", strategy=self.name)
        entry = payload[0] or {}
        urls = entry.get("urls") or []
        if not urls or not urls[0].get("url"):
            raise ExtractionError.classify("No URLs found in Instagram API response", strategy=self.name)
        meta = entry.get("meta") or {}
        return FallbackMedia(
            media_url=urls[0]["url"],
            uploader=meta.get("username") or "instagram",
            title=meta.get("title") or None,
            resolution="720p",
        )


def default_fallbacks(rapidapi_key: str | None, timeout: float) -> dict[str, FallbackApi]:
    apis: list[FallbackApi] = [
        TikwmFallback(timeout=timeout),
        RapidApiInstagramFallback(rapidapi_key, timeout=timeout),
    ]
    return {api.name: api for api in apis}


def stream_to_file(
    media_url: str,
    destination: Path,
    timeout: float,
    strategy: str,
    headers: dict[str, str] | None = None,
    on_fraction: Callable[[float], None] | None = None,
    session: requests.Session | None = None,
    cancel_event: threading.Event | None = None,
) -> int:
    """Stream ``media_url`` into ``destination`` and return the bytes written.

    Blocking; run it in a worker thread. Setting ``cancel_event`` aborts the
    transfer before the next chunk is written. A partial file is left behind
    on failure and must be removed by the caller.
    """
    http = session or requests
    request_headers = {"User-Agent": CHROME_USER_AGENT}
    request_headers.update(headers or {})
    try:
        with http.get(media_url, headers=request_headers, timeout=timeout, stream=True) as response:
            response.raise_for_status()
            expected = int(response.headers.get("Content-Length") or 0)
            written = 0
            with destination.open("wb") as output:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if cancel_event is not None and cancel_event.is_set():
                        raise ExtractionError.classify(f"{strategy} media download aborted", strategy=strategy)
                    if not chunk:
                        continue
                    output.write(chunk)
                    written += len(chunk)
                    if expected and on_fraction is not None:
                        on_fraction(written / expected)
            return written
    except requests.RequestException as err:
        raise normalize_api_error(err, f"{strategy} media download failed", strategy) from err
