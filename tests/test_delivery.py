from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
import requests

from relaybot.delivery import (
    HOST,
    INLINE,
    CatboxHost,
    DeliverySink,
    FileHost,
    GoFileHost,
    HostedLink,
    choose_mode,
    upload_to_hosts,
)
from relaybot.errors import DeliveryError
from relaybot.models import Artifact, Metadata
from relaybot.tempfiles import TempDir


def make_artifact(path: Path, size: int | None = None) -> Artifact:
    return Artifact(
        path=path,
        size=size if size is not None else path.stat().st_size,
        platform="tiktok",
        strategy="extractor",
        metadata=Metadata(url="https://www.tiktok.com/@a/video/1"),
    )


class StaticHost(FileHost):
    def __init__(self, name, url=None, error=None, max_size=None):
        super().__init__(timeout=1, session=MagicMock())
        self.name = name
        self.url = url
        self.error = error
        self.max_size = max_size
        self.uploads: list[Path] = []

    def upload(self, path):
        self.uploads.append(path)
        if self.error:
            raise DeliveryError(self.error)
        return self.url


@pytest.fixture
def video(tmp_path):
    path = tmp_path / "clip.mp4"
    path.write_bytes(b"v" * 100)
    return path


def test_choose_mode_threshold_is_inclusive():
    assert choose_mode(50, 50) == INLINE
    assert choose_mode(51, 50) == HOST


class TestHostChain:
    def test_first_success_wins(self, video):
        first = StaticHost("first", error="server not available")
        second = StaticHost("second", url="https://second.example/f")
        third = StaticHost("third", url="https://third.example/f")

        link = upload_to_hosts(video, [first, second, third])

        assert link == HostedLink(provider="second", url="https://second.example/f")
        assert first.uploads == [video]
        assert third.uploads == []

    def test_size_cap_skips_host(self, video):
        small = StaticHost("small", url="https://small.example/f", max_size=10)
        big = StaticHost("big", url="https://big.example/f")

        assert upload_to_hosts(video, [small, big]).provider == "big"
        assert small.uploads == []

    def test_all_hosts_failing_raises(self, video):
        hosts = [StaticHost("a", error="down"), StaticHost("b", max_size=1)]
        with pytest.raises(DeliveryError, match="All file host uploads failed"):
            upload_to_hosts(video, hosts)


class TestGoFile:
    def test_upload_uses_assigned_server(self, video):
        session = MagicMock(spec=requests.Session)
        server_response = MagicMock()
        server_response.json.return_value = {"status": "ok", "data": {"server": "store7"}}
        upload_response = MagicMock()
        upload_response.json.return_value = {"status": "ok", "data": {"downloadPage": "https://gofile.io/d/abc"}}
        session.get.return_value = server_response
        session.post.return_value = upload_response

        url = GoFileHost(session=session).upload(video)

        assert url == "https://gofile.io/d/abc"
        args, kwargs = session.post.call_args
        assert args[0] == "https://store7.gofile.io/uploadFile"
        assert kwargs["files"]["file"][0] == "clip.mp4"

    def test_server_unavailable(self, video):
        session = MagicMock(spec=requests.Session)
        session.get.return_value.json.return_value = {"status": "error"}

        with pytest.raises(DeliveryError, match="server not available"):
            GoFileHost(session=session).upload(video)
        session.post.assert_not_called()

    def test_network_error(self, video):
        session = MagicMock(spec=requests.Session)
        session.get.side_effect = requests.ConnectionError("offline")

        with pytest.raises(DeliveryError, match="offline"):
            GoFileHost(session=session).upload(video)


class TestCatbox:
    def test_upload_returns_link(self, video):
        session = MagicMock(spec=requests.Session)
        session.post.return_value.text = "https://files.catbox.moe/xyz.mp4\n"

        assert CatboxHost(session=session).upload(video) == "https://files.catbox.moe/xyz.mp4"
        _, kwargs = session.post.call_args
        assert kwargs["data"] == {"reqtype": "fileupload"}

    def test_rejects_non_link_body(self, video):
        session = MagicMock(spec=requests.Session)
        session.post.return_value.text = "Error: too big"

        with pytest.raises(DeliveryError, match="invalid response"):
            CatboxHost(session=session).upload(video)

    def test_size_cap(self):
        assert not CatboxHost().accepts(201 * 1024 * 1024)
        assert CatboxHost().accepts(200 * 1024 * 1024)


class TestDeliverySink:
    @pytest.mark.asyncio
    async def test_small_artifact_is_sent_inline_and_removed(self, video, tmp_path):
        sink = DeliverySink(threshold=1000, hosts=[], temp_dir=TempDir(tmp_path))
        send_inline = AsyncMock()
        send_link = AsyncMock()
        artifact = make_artifact(video)

        receipt = await sink.deliver(artifact, send_inline, send_link)

        assert receipt.mode == INLINE
        assert receipt.link is None
        send_inline.assert_awaited_once_with(artifact)
        send_link.assert_not_awaited()
        assert not video.exists()

    @pytest.mark.asyncio
    async def test_large_artifact_goes_through_hosts(self, video):
        host = StaticHost("GoFile.io", url="https://gofile.io/d/abc")
        sink = DeliverySink(threshold=10, hosts=[host])
        send_inline = AsyncMock()
        send_link = AsyncMock()
        artifact = make_artifact(video)

        receipt = await sink.deliver(artifact, send_inline, send_link, tag="t1")

        assert receipt.mode == HOST
        assert receipt.link == HostedLink("GoFile.io", "https://gofile.io/d/abc")
        send_link.assert_awaited_once_with(artifact, receipt.link)
        send_inline.assert_not_awaited()
        assert video.exists()

    @pytest.mark.asyncio
    async def test_sender_failures_become_delivery_errors(self, video):
        sink = DeliverySink(threshold=1000, hosts=[])
        send_inline = AsyncMock(side_effect=RuntimeError("Request Entity Too Large"))

        with pytest.raises(DeliveryError, match="Request Entity Too Large"):
            await sink.deliver(make_artifact(video), send_inline, AsyncMock())

    @pytest.mark.asyncio
    async def test_host_chain_failure_is_delivery_error(self, video):
        sink = DeliverySink(threshold=10, hosts=[StaticHost("a", error="down")])

        with pytest.raises(DeliveryError):
            await sink.deliver(make_artifact(video), AsyncMock(), AsyncMock())
