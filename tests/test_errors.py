import pytest

from relaybot.errors import (
    ExtractionError,
    PermanentExtractionError,
    RelayError,
    TransientExtractionError,
    is_permanent_output,
)


class TestClassification:
    @pytest.mark.parametrize(
        "message",
        [
            "ERROR: [youtube] abc: Private video. Sign in if you've been granted access",
            "ERROR: [TikTok] 123: HTTP Error 404: Not Found",
            "ERROR: Video unavailable. This video has been removed",
            "This account is private",
            "User not found",
            "Blocked due to a copyright claim by Someone",
            "tikwm request failed - status 404",
        ],
    )
    def test_permanent_signatures(self, message):
        error = ExtractionError.classify(message)
        assert isinstance(error, PermanentExtractionError)
        assert error.permanent

    @pytest.mark.parametrize(
        "message",
        [
            "Extractor timed out",
            "ERROR: Unable to download webpage: <urlopen error [Errno 110] Connection timed out>",
            "HTTP Error 503: Service Unavailable",
            "Extractor exited with code 1",
            "Downloaded 4040 bytes",
        ],
    )
    def test_transient_by_default(self, message):
        error = ExtractionError.classify(message)
        assert isinstance(error, TransientExtractionError)
        assert not error.permanent

    def test_diagnostic_output_is_considered(self):
        error = ExtractionError.classify("Extractor exited with code 1", raw_output="ERROR: HTTP Error 410: Gone")
        assert error.permanent
        assert error.raw_output.endswith("Gone")

    @pytest.mark.parametrize("status_code, permanent", [(451, True), (401, True), (400, True), (429, False), (502, False)])
    def test_fallback_status_codes(self, status_code, permanent):
        error = ExtractionError.classify("fallback failed", strategy="tikwm", status_code=status_code)
        assert error.permanent is permanent
        assert error.strategy == "tikwm"
        assert error.status_code == status_code

    def test_errors_share_base(self):
        assert issubclass(PermanentExtractionError, RelayError)
        assert issubclass(RelayError, RuntimeError)

    def test_empty_output_is_not_permanent(self):
        assert not is_permanent_output("")
        assert not is_permanent_output(None)
