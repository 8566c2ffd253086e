import threading
from unittest.mock import MagicMock

import pytest
import requests

from relaybot.errors import ExtractionError
from relaybot.fallbacks import (
    RapidApiInstagramFallback,
    TikwmFallback,
    default_fallbacks,
    normalize_api_error,
    stream_to_file,
)


def json_response(payload, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} Error", response=response)
    return response


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


class TestTikwm:
    def test_resolves_hd_url_with_relative_prefix(self, session):
        session.post.return_value = json_response(
            {"code": 0, "data": {"hdplay": "/video/media/hdplay/1.mp4", "title": "Dance", "author": {"unique_id": "dancer"}}}
        )
        api = TikwmFallback(timeout=5, session=session)

        media = api.resolve("https://www.tiktok.com/@dancer/video/1")

        assert media.media_url == "https://www.tikwm.com/video/media/hdplay/1.mp4"
        assert media.uploader == "dancer"
        assert media.title == "Dance"
        _, kwargs = session.post.call_args
        assert kwargs["data"] == {"url": "https://www.tiktok.com/@dancer/video/1", "hd": 1}
        assert kwargs["timeout"] == 5

    def test_error_code_is_transient(self, session):
        session.post.return_value = json_response({"code": -1, "msg": "Url parsing is failed!"})

        with pytest.raises(ExtractionError) as excinfo:
            TikwmFallback(session=session).resolve("https://www.tiktok.com/@a/video/1")

        assert not excinfo.value.permanent
        assert excinfo.value.strategy == "tikwm"

    def test_not_found_status_is_permanent(self, session):
        session.post.return_value = json_response({}, status_code=404)

        with pytest.raises(ExtractionError) as excinfo:
            TikwmFallback(session=session).resolve("https://www.tiktok.com/@a/video/1")

        assert excinfo.value.permanent
        assert excinfo.value.status_code == 404

    def test_server_error_is_transient(self, session):
        session.post.return_value = json_response({}, status_code=502)

        with pytest.raises(ExtractionError) as excinfo:
            TikwmFallback(session=session).resolve("https://www.tiktok.com/@a/video/1")

        assert not excinfo.value.permanent

    def test_invalid_json(self, session):
        response = json_response(None)
        response.json.side_effect = ValueError("not json")
        session.post.return_value = response

        with pytest.raises(ExtractionError, match="invalid JSON"):
            TikwmFallback(session=session).resolve("https://www.tiktok.com/@a/video/1")


class TestRapidApiInstagram:
    def test_unavailable_without_key(self):
        api = RapidApiInstagramFallback(api_key=None)
        assert not api.available()
        with pytest.raises(ExtractionError):
            api.resolve("https://www.instagram.com/reel/abc/")

    def test_parses_first_url(self, session):
        session.post.return_value = json_response(
            [{"urls": [{"url": "https://cdn.example/reel.mp4"}], "meta": {"username": "insta_user", "title": "Hi"}}]
        )
        api = RapidApiInstagramFallback(api_key="key", session=session)

        media = api.resolve("https://www.instagram.com/reel/abc/")

        assert media.media_url == "https://cdn.example/reel.mp4"
        assert media.uploader == "insta_user"
        _, kwargs = session.post.call_args
        assert kwargs["headers"]["x-rapidapi-key"] == "key"
        assert kwargs["json"] == {"url": "https://www.instagram.com/reel/abc/"}

    def test_empty_payload(self, session):
        session.post.return_value = json_response([])
        with pytest.raises(ExtractionError, match="invalid data structure"):
            RapidApiInstagramFallback(api_key="key", session=session).resolve("https://www.instagram.com/p/abc/")


class TestStreamToFile:
    def test_writes_chunks_and_reports_fraction(self, tmp_path, session):
        response = MagicMock()
        response.headers = {"Content-Length": "6"}
        response.iter_content.return_value = [b"abc", b"", b"def"]
        session.get.return_value.__enter__.return_value = response
        fractions = []
        destination = tmp_path / "out.mp4"

        written = stream_to_file(
            "https://cdn.example/v.mp4", destination, 5, "tikwm", on_fraction=fractions.append, session=session
        )

        assert written == 6
        assert destination.read_bytes() == b"abcdef"
        assert fractions == [0.5, 1.0]
        _, kwargs = session.get.call_args
        assert kwargs["stream"] is True
        assert "Mozilla" in kwargs["headers"]["User-Agent"]

    def test_cancel_event_aborts_before_next_chunk(self, tmp_path, session):
        cancel = threading.Event()

        def chunks():
            yield b"abc"
            cancel.set()
            yield b"def"

        response = MagicMock()
        response.headers = {"Content-Length": "6"}
        response.iter_content.return_value = chunks()
        session.get.return_value.__enter__.return_value = response
        fractions = []
        destination = tmp_path / "out.mp4"

        with pytest.raises(ExtractionError, match="aborted") as excinfo:
            stream_to_file(
                "https://cdn.example/v.mp4",
                destination,
                5,
                "tikwm",
                on_fraction=fractions.append,
                session=session,
                cancel_event=cancel,
            )

        assert not excinfo.value.permanent
        assert fractions == [0.5]
        assert destination.read_bytes() == b"abc"

    def test_http_error_is_classified(self, tmp_path, session):
        response = MagicMock()
        response.raise_for_status.side_effect = requests.HTTPError("403", response=MagicMock(status_code=403))
        session.get.return_value.__enter__.return_value = response

        with pytest.raises(ExtractionError) as excinfo:
            stream_to_file("https://cdn.example/v.mp4", tmp_path / "out.mp4", 5, "tikwm", session=session)

        assert excinfo.value.permanent
        assert excinfo.value.strategy == "tikwm"


def test_normalize_api_error_passes_extraction_errors_through():
    original = ExtractionError.classify("already classified")
    assert normalize_api_error(original, "prefix", "tikwm") is original


def test_timeout_is_transient():
    error = normalize_api_error(requests.Timeout("read timed out"), "tikwm request failed", "tikwm")
    assert not error.permanent
    assert "read timed out" in str(error)


def test_default_fallbacks_registry():
    registry = default_fallbacks(None, 10)
    assert set(registry) == {"tikwm", "rapidapi_instagram"}
    assert registry["tikwm"].timeout == 10
    assert not registry["rapidapi_instagram"].available()
