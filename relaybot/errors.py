import re

PERMANENT_STATUS_CODES = frozenset({400, 401, 403, 404, 410, 451})

PERMANENT_ERROR_PATTERNS = (
    "http error 403",
    "http error 404",
    "http error 410",
    "404 not found",
    "410 gone",
    "forbidden",
    "private video",
    "video unavailable",
    "video is unavailable",
    "video does not exist",
    "no longer available",
    "not available in your country",
    "sign in to confirm your age",
    "playback on other websites has been disabled",
    "this live event has ended",
    "copyright claim",
    "account is private",
    "account suspended",
    "user not found",
    "unsupported url",
    "invalid url",
)

_BARE_STATUS_RE = re.compile(r"\b(403|404|410)\b")


def is_permanent_output(output: str | None) -> bool:
    if not output:
        return False
    lowered = output.lower()
    if any(pattern in lowered for pattern in PERMANENT_ERROR_PATTERNS):
        return True
    return bool(_BARE_STATUS_RE.search(lowered))


class RelayError(RuntimeError):
    pass


class ConfigError(RelayError):
    pass


class QueueFullError(RelayError):
    pass


class PersistenceError(RelayError):
    pass


class DeliveryError(RelayError):
    pass


class ExtractionError(RelayError):
    permanent = False

    def __init__(self, message: str, raw_output: str = "", strategy: str = "extractor", status_code: int | None = None):
        super().__init__(message)
        self.raw_output = raw_output or ""
        self.strategy = strategy
        self.status_code = status_code

    @staticmethod
    def classify(
        message: str,
        raw_output: str = "",
        strategy: str = "extractor",
        status_code: int | None = None,
    ) -> "ExtractionError":
        """Build the permanent or transient error for a failed strategy.

        This is the only place a failure is tagged; later stages trust the
        ``permanent`` flag as-is.
        """
        permanent = status_code in PERMANENT_STATUS_CODES or is_permanent_output(
            f"{message}\n{raw_output}"
        )
        error_cls = PermanentExtractionError if permanent else TransientExtractionError
        return error_cls(message, raw_output=raw_output, strategy=strategy, status_code=status_code)


class PermanentExtractionError(ExtractionError):
    permanent = True


class TransientExtractionError(ExtractionError):
    permanent = False
