import html
import re

QUALITY_LABELS = ((2160, "4K"), (1080, "1080p"), (720, "720p"), (480, "480p"))


def format_bytes(size: int | float | None) -> str:
    if not size:
        return "0 B"
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024:
            return f"{value:.2f}".rstrip("0").rstrip(".") + f" {unit}"
        value /= 1024
    return f"{value:.2f}".rstrip("0").rstrip(".") + " TB"


def format_uptime(seconds: float) -> str:
    seconds = int(seconds)
    days, rest = divmod(seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes = rest // 60
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def shorten_text(text: str | None, limit: int = 500) -> str:
    if not text:
        return ""
    trimmed = str(text).strip()
    if len(trimmed) <= limit:
        return trimmed
    return trimmed[: limit - 3] + "..."


def sanitize_filename(value: str | None) -> str:
    if not value:
        return "unknown"
    clean = re.sub(r"[^a-zA-Z0-9._@-]", "_", value)
    clean = re.sub(r"_+", "_", clean).strip("_")
    return clean[:50] or "unknown"


def resolution_label(resolution: str | None) -> str:
    match = re.search(r"(\d+)x(\d+)", resolution or "")
    if not match:
        return "HD"
    height = int(match.group(2))
    for min_height, label in QUALITY_LABELS:
        if height >= min_height:
            return label
    return f"{height}p"


def normalize_error_reason(raw_reason: str | None) -> str:
    reason = (raw_reason or "").strip()
    if not reason:
        return "unknown error"
    reason = re.sub(r"\s+", " ", reason).strip()
    return reason[:180]


def progress_bar(percentage: float, length: int = 20) -> str:
    safe = max(0.0, min(100.0, percentage))
    filled = round(safe / 100 * length)
    return "█" * filled + "░" * (length - filled)


def build_caption(source_url: str, sender_name: str, uploader: str | None = None, resolution: str | None = None, size: int | None = None) -> str:
    safe_url = html.escape(source_url, quote=True)
    caption = f'<a href="{safe_url}">Post</a> sent by <b>{html.escape(sender_name)}</b>'
    details = [resolution_label(resolution)]
    if size:
        details.append(format_bytes(size))
    if uploader and uploader not in ("unknown_user", "Unknown"):
        details.append(f"@{html.escape(uploader)}")
    return caption + "\n" + " • ".join(details)


def build_download_error_message(source_url: str, reason: str) -> str:
    safe_url = html.escape(source_url, quote=True)
    safe_reason = html.escape(normalize_error_reason(reason))
    return f'Couldn\'t download <a href="{safe_url}">media</a>: <i>{safe_reason}</i>'
