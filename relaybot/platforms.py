import dataclasses
import enum
import re
from urllib.parse import urlparse

URL_REGEX = re.compile(r"(https?://[^\s<>]+)", re.IGNORECASE)

CHROME_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)
DEFAULT_FORMATS = ("bestvideo*+bestaudio/best", "best")


class Platform(str, enum.Enum):
    TIKTOK = "tiktok"
    INSTAGRAM = "instagram"
    TWITTER = "twitter"
    YOUTUBE = "youtube"
    SNAPCHAT = "snapchat"
    FACEBOOK = "facebook"
    REDDIT = "reddit"
    DEFAULT = "default"


@dataclasses.dataclass(frozen=True)
class FormatPolicy:
    formats: tuple[str, ...] = DEFAULT_FORMATS
    referer: str | None = None
    user_agent: str = CHROME_USER_AGENT
    concurrent_fragments: int = 32
    http_chunk_size: str | None = None
    extra_args: tuple[str, ...] = ()
    cookie_file: str | None = None
    fallbacks: tuple[str, ...] = ()
    # yt-dlp --impersonate target; applied only when EXTRACTOR_IMPERSONATE is on.
    impersonate: str | None = "chrome-131:android-14"

    @property
    def format_selector(self) -> str:
        return "/".join(self.formats)

    @property
    def headers(self) -> dict[str, str]:
        headers = {"User-Agent": self.user_agent}
        if self.referer:
            headers["Referer"] = self.referer
        return headers


@dataclasses.dataclass(frozen=True)
class Classification:
    platform: Platform
    policy: FormatPolicy


POLICIES: dict[Platform, FormatPolicy] = {
    Platform.TIKTOK: FormatPolicy(
        referer="https://www.tiktok.com/",
        http_chunk_size="10M",
        extra_args=("--no-check-certificates",),
        fallbacks=("tikwm",),
    ),
    Platform.INSTAGRAM: FormatPolicy(
        referer="https://www.instagram.com/",
        impersonate="chrome-136:macos-15",
        cookie_file="instagram_cookies.txt",
        fallbacks=("rapidapi_instagram",),
    ),
    Platform.TWITTER: FormatPolicy(
        referer="https://x.com/",
        impersonate="chrome-131:windows-10",
        cookie_file="twitter_cookies.txt",
    ),
    Platform.YOUTUBE: FormatPolicy(
        referer="https://www.youtube.com/",
        impersonate="chrome-136:macos-15",
        extra_args=("--prefer-free-formats",),
        cookie_file="youtube_cookies.txt",
    ),
    Platform.SNAPCHAT: FormatPolicy(
        concurrent_fragments=3,
        http_chunk_size="5M",
        extra_args=(
            "--retries", "10",
            "--fragment-retries", "25",
            "--socket-timeout", "90",
            "--geo-bypass",
            "--no-check-certificates",
        ),
    ),
    Platform.FACEBOOK: FormatPolicy(
        referer="https://www.facebook.com/",
        impersonate="chrome-131:windows-10",
        cookie_file="facebook_cookies.txt",
    ),
    Platform.REDDIT: FormatPolicy(
        referer="https://www.reddit.com/",
        impersonate="chrome-136:macos-15",
    ),
    Platform.DEFAULT: FormatPolicy(),
}

# First match wins; host sets are disjoint so order only matters for readability.
_PLATFORM_RULES: tuple[tuple[Platform, frozenset[str], re.Pattern], ...] = (
    (
        Platform.TIKTOK,
        frozenset({"tiktok.com", "www.tiktok.com", "m.tiktok.com", "vm.tiktok.com", "vt.tiktok.com"}),
        re.compile(r"^/(?:@[\w.\-]+/(?:video|photo)/\d+|[\w@.\-]+)"),
    ),
    (
        Platform.INSTAGRAM,
        frozenset({"instagram.com", "www.instagram.com", "instagr.am", "www.instagr.am"}),
        re.compile(r"^/(?:[\w.]+/)?(?:p|reel|reels|tv|stories)/[\w\-]+"),
    ),
    (
        Platform.TWITTER,
        frozenset({"twitter.com", "www.twitter.com", "mobile.twitter.com", "x.com", "www.x.com", "mobile.x.com"}),
        re.compile(r"^/\w+/status/\d+"),
    ),
    (
        Platform.YOUTUBE,
        frozenset({"youtube.com", "www.youtube.com", "m.youtube.com"}),
        re.compile(r"^/(?:shorts/[\w\-]+|watch$)"),
    ),
    (
        Platform.YOUTUBE,
        frozenset({"youtu.be"}),
        re.compile(r"^/[\w\-]+"),
    ),
    (
        Platform.SNAPCHAT,
        frozenset({"snapchat.com", "www.snapchat.com"}),
        re.compile(r"^/(?:add/[\w.\-]+/[\w\-]+|t/[\w\-]+|spotlight/[\w\-]+)"),
    ),
    (
        Platform.FACEBOOK,
        frozenset({"facebook.com", "www.facebook.com", "m.facebook.com"}),
        re.compile(r"^/(?:watch/?$|reel/[\w\-]+|share/[vr]/[\w\-]+)"),
    ),
    (
        Platform.FACEBOOK,
        frozenset({"fb.watch"}),
        re.compile(r"^/[\w\-]+"),
    ),
    (
        Platform.REDDIT,
        frozenset({"reddit.com", "www.reddit.com", "old.reddit.com"}),
        re.compile(r"^/r/\w+/comments/[\w/]+"),
    ),
)


def extract_links(text: str) -> list[str]:
    raw_links = URL_REGEX.findall(text or "")
    return [link.rstrip(".,;:!?)]}>\"'") for link in raw_links]


def _split_url(url: str) -> tuple[str, str, str]:
    parsed = urlparse(url.strip())
    host = parsed.netloc.lower().split("@")[-1].split(":")[0]
    return host, parsed.path or "/", parsed.query


def match_platform(url: str) -> Platform | None:
    """Return the platform whose URL shape ``url`` matches, or None."""
    host, path, query = _split_url(url)
    for platform, hosts, path_re in _PLATFORM_RULES:
        if host not in hosts or not path_re.match(path):
            continue
        if platform is Platform.YOUTUBE and path.startswith("/watch") and "v=" not in query:
            continue
        if platform is Platform.FACEBOOK and path.rstrip("/") == "/watch" and "v=" not in query:
            continue
        return platform
    return None


def classify(url: str) -> Classification:
    platform = match_platform(url) or Platform.DEFAULT
    return Classification(platform=platform, policy=POLICIES[platform])


def normalize_url(url: str) -> str:
    normalized = re.sub(r"^https?://", "", url.strip(), flags=re.IGNORECASE)
    normalized = re.sub(r"^www\.", "", normalized, flags=re.IGNORECASE)
    normalized = normalized.split("#")[0].split("?")[0].rstrip("/")
    return normalized.lower()


def find_supported_links(text: str) -> list[tuple[str, Platform]]:
    found: list[tuple[str, Platform]] = []
    seen: set[str] = set()
    for link in extract_links(text):
        platform = match_platform(link)
        if platform is None:
            continue
        # YouTube and Facebook watch links keep their identity in the query string.
        key = normalize_url(link)
        if platform in (Platform.YOUTUBE, Platform.FACEBOOK) and "/watch" in key:
            key = f"{key}?{_split_url(link)[2]}"
        if key in seen:
            continue
        seen.add(key)
        found.append((link, platform))
    return found
