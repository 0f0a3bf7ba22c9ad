from __future__ import annotations

import hashlib
import io
import os
import subprocess
import sys
import tarfile
import threading
import time
from pathlib import Path
from urllib.parse import urlsplit

import pytest
import requests

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

import screen2site.engine_loader as engine_loader  # noqa: E402
from screen2site.engine_loader import (  # noqa: E402
    BUNDLED_SOURCE_NAME,
    EngineLoader,
    default_engine_sources,
)
from screen2site.errors import ResourceUnavailable  # noqa: E402
from screen2site.models import EngineSource  # noqa: E402

FAKE_BINARY = b"\x7fELF fake ffmpeg build"
EXE_NAME = "ffmpeg.exe" if os.name == "nt" else "ffmpeg"


class FakeFetcher:
    def __init__(self, responses: dict[str, object], delay: float = 0.0):
        self.responses = responses
        self.delay = delay
        self.calls: list[tuple[str, str]] = []

    def _payload(self, url: str) -> bytes:
        if self.delay:
            time.sleep(self.delay)
        value = self.responses.get(url)
        if value is None:
            raise requests.HTTPError(f"404 Client Error: Not Found for url: {url}")
        if isinstance(value, Exception):
            raise value
        return value  # type: ignore[return-value]

    def download_to_file(self, url: str, dest: Path) -> Path:
        self.calls.append(("stream", url))
        dest.write_bytes(self._payload(url))
        return dest

    def fetch_bytes(self, url: str) -> bytes:
        self.calls.append(("fetch", url))
        return self._payload(url)


def _source(name: str, stream_to_disk: bool = True, suffix: str = "") -> EngineSource:
    return EngineSource(
        name=name,
        binary_url=f"https://{name}.example.com/builds/ffmpeg-linux64{suffix}",
        manifest_url=f"https://{name}.example.com/builds/checksums.sha256",
        stream_to_disk=stream_to_disk,
    )


def _manifest_for(source: EngineSource, payload: bytes) -> bytes:
    name = Path(urlsplit(source.binary_url).path).name
    return f"{hashlib.sha256(payload).hexdigest()}  {name}\n".encode()


def _serve(source: EngineSource, payload: bytes = FAKE_BINARY) -> dict[str, object]:
    return {source.binary_url: payload, source.manifest_url: _manifest_for(source, payload)}


def _fake_version_run(cmd, capture_output, text, encoding, errors):
    return subprocess.CompletedProcess(cmd, 0, "ffmpeg version 7.1-static Copyright (c) 2000-2024\n", "")


@pytest.fixture
def fake_version(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(engine_loader.subprocess, "run", _fake_version_run)


def test_loader_stops_at_first_working_source_and_caches(tmp_path: Path, fake_version) -> None:
    broken = _source("mirror-a")
    working = _source("mirror-b")
    unused = _source("mirror-c")
    responses: dict[str, object] = {broken.binary_url: requests.ConnectionError("connection refused")}
    responses.update(_serve(working))
    responses.update(_serve(unused))
    fetcher = FakeFetcher(responses)
    loader = EngineLoader([broken, working, unused], fetcher=fetcher, use_bundled=False, workspace=tmp_path)

    handle = loader.load()

    assert handle.source_name == "mirror-b"
    assert handle.version.startswith("ffmpeg version 7.1")
    assert loader.attempts == ["mirror-a", "mirror-b"]
    assert not any(unused.binary_url == url for _, url in fetcher.calls)

    calls_after_first_load = list(fetcher.calls)
    assert loader.load() is handle
    assert fetcher.calls == calls_after_first_load
    assert loader.attempts == ["mirror-a", "mirror-b"]


def test_loader_reports_every_source_when_all_fail(tmp_path: Path, fake_version) -> None:
    sources = [_source("mirror-a"), _source("mirror-b"), _source("mirror-c")]
    responses: dict[str, object] = {
        sources[0].binary_url: requests.ConnectionError("connection refused"),
        sources[1].binary_url: requests.HTTPError("503 Server Error"),
        sources[2].binary_url: requests.Timeout("read timed out"),
    }
    loader = EngineLoader(sources, fetcher=FakeFetcher(responses), use_bundled=False, workspace=tmp_path)

    with pytest.raises(ResourceUnavailable) as excinfo:
        loader.load()

    assert excinfo.value.attempts == 3
    message = str(excinfo.value)
    assert "3 different sources" in message
    assert "read timed out" in message
    assert "Network connectivity" in message
    assert loader.handle is None


def test_failed_load_is_not_cached(tmp_path: Path, fake_version) -> None:
    source = _source("mirror-a")
    responses: dict[str, object] = {source.binary_url: requests.ConnectionError("offline")}
    fetcher = FakeFetcher(responses)
    loader = EngineLoader([source], fetcher=fetcher, use_bundled=False, workspace=tmp_path)

    with pytest.raises(ResourceUnavailable):
        loader.load()

    responses.update(_serve(source))
    handle = loader.load()
    assert handle.source_name == "mirror-a"
    assert loader.attempts == ["mirror-a", "mirror-a"]


def test_checksum_mismatch_rejects_source(tmp_path: Path, fake_version) -> None:
    tampered = _source("mirror-a")
    working = _source("mirror-b")
    responses: dict[str, object] = {
        tampered.binary_url: FAKE_BINARY + b"tampered",
        tampered.manifest_url: _manifest_for(tampered, FAKE_BINARY),
    }
    responses.update(_serve(working))
    loader = EngineLoader([tampered, working], fetcher=FakeFetcher(responses), use_bundled=False, workspace=tmp_path)

    handle = loader.load()

    assert handle.source_name == "mirror-b"
    assert loader.attempts == ["mirror-a", "mirror-b"]


def test_fetch_strategy_follows_source_flag(tmp_path: Path, fake_version) -> None:
    direct = _source("direct", stream_to_disk=False)
    fetcher = FakeFetcher(_serve(direct))
    loader = EngineLoader([direct], fetcher=fetcher, use_bundled=False, workspace=tmp_path)

    loader.load()

    assert {kind for kind, _ in fetcher.calls} == {"fetch"}

    streamed = _source("streamed", stream_to_disk=True)
    fetcher = FakeFetcher(_serve(streamed))
    loader = EngineLoader([streamed], fetcher=fetcher, use_bundled=False, workspace=tmp_path / "second")

    loader.load()

    assert {kind for kind, _ in fetcher.calls} == {"stream"}


def test_failing_version_probe_moves_to_next_source(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    wrong_arch = _source("mirror-a")
    working = _source("mirror-b")
    responses = _serve(wrong_arch, b"wrong architecture build")
    responses.update(_serve(working))

    def fake_run(cmd, capture_output, text, encoding, errors):
        if Path(cmd[0]).read_bytes() == b"wrong architecture build":
            raise OSError(8, "Exec format error")
        return _fake_version_run(cmd, capture_output, text, encoding, errors)

    monkeypatch.setattr(engine_loader.subprocess, "run", fake_run)
    loader = EngineLoader([wrong_arch, working], fetcher=FakeFetcher(responses), use_bundled=False, workspace=tmp_path)

    handle = loader.load()

    assert handle.source_name == "mirror-b"
    assert loader.attempts == ["mirror-a", "mirror-b"]


def test_archive_payload_is_unpacked(tmp_path: Path, fake_version) -> None:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:xz") as archive:
        for member_name, data in (
            ("ffmpeg-n7.1-linux64/README.txt", b"readme"),
            (f"ffmpeg-n7.1-linux64/bin/{EXE_NAME}", FAKE_BINARY),
        ):
            info = tarfile.TarInfo(member_name)
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    payload = buffer.getvalue()
    source = _source("archive", suffix=".tar.xz")
    loader = EngineLoader([source], fetcher=FakeFetcher(_serve(source, payload)), use_bundled=False, workspace=tmp_path)

    handle = loader.load()

    assert handle.executable.name == EXE_NAME
    assert handle.executable.read_bytes() == FAKE_BINARY
    if os.name != "nt":
        assert os.access(handle.executable, os.X_OK)


def test_bundled_engine_skips_remote_sources(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, fake_version) -> None:
    real_import_module = engine_loader.importlib.import_module

    class FakeImageioFfmpeg:
        @staticmethod
        def get_ffmpeg_exe() -> str:
            return "/opt/ffmpeg/bin/ffmpeg"

    def fake_import_module(name: str):
        if name == "imageio_ffmpeg":
            return FakeImageioFfmpeg
        return real_import_module(name)

    monkeypatch.setattr(engine_loader.importlib, "import_module", fake_import_module)
    fetcher = FakeFetcher({})
    loader = EngineLoader([_source("mirror-a")], fetcher=fetcher, use_bundled=True, workspace=tmp_path)

    handle = loader.load()

    assert handle.source_name == BUNDLED_SOURCE_NAME
    assert handle.executable == Path("/opt/ffmpeg/bin/ffmpeg")
    assert fetcher.calls == []
    assert loader.attempts == []


def test_missing_bundled_engine_falls_through_to_sources(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, fake_version
) -> None:
    real_import_module = engine_loader.importlib.import_module

    def fake_import_module(name: str):
        if name == "imageio_ffmpeg":
            raise ModuleNotFoundError("No module named 'imageio_ffmpeg'")
        return real_import_module(name)

    monkeypatch.setattr(engine_loader.importlib, "import_module", fake_import_module)
    source = _source("mirror-a")
    loader = EngineLoader([source], fetcher=FakeFetcher(_serve(source)), use_bundled=True, workspace=tmp_path)

    assert loader.load().source_name == "mirror-a"


def test_concurrent_first_loads_share_one_engine(tmp_path: Path, fake_version) -> None:
    source = _source("mirror-a")
    fetcher = FakeFetcher(_serve(source), delay=0.05)
    loader = EngineLoader([source], fetcher=fetcher, use_bundled=False, workspace=tmp_path)
    handles = []

    threads = [threading.Thread(target=lambda: handles.append(loader.load())) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(handles) == 4
    assert all(handle is handles[0] for handle in handles)
    assert loader.attempts == ["mirror-a"]
    assert len(fetcher.calls) == 2


def test_default_sources_span_origins_and_versions() -> None:
    linux = default_engine_sources("linux")
    windows = default_engine_sources("win32")

    assert len({urlsplit(s.binary_url).netloc for s in linux}) >= 2
    assert any("n7.1" in s.binary_url for s in linux)
    assert any("n6.1" in s.binary_url for s in linux)
    assert {s.stream_to_disk for s in linux} == {True, False}
    assert all(s.binary_url.startswith("https://") for s in linux + windows)
    assert all(s.binary_url.endswith(".zip") for s in windows)


class StubResponse:
    def __init__(self, url: str, status_code: int, body: bytes = b""):
        self.url = url
        self.status_code = status_code
        self.content = body
        self.chunk_sizes: list[int] = []

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error for url: {self.url}", response=self)

    def iter_content(self, chunk_size: int = 1):
        self.chunk_sizes.append(chunk_size)
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start : start + chunk_size]

    def __enter__(self) -> "StubResponse":
        return self

    def __exit__(self, *exc_info) -> None:
        return None


class StubSession:
    def __init__(self, bodies: dict[str, bytes]):
        self.bodies = bodies
        self.requests: list[tuple[str, bool]] = []
        self.responses: list[StubResponse] = []

    def get(self, url: str, stream: bool = False, timeout: float | None = None) -> StubResponse:
        self.requests.append((url, stream))
        body = self.bodies.get(url)
        response = StubResponse(url, 404) if body is None else StubResponse(url, 200, body)
        self.responses.append(response)
        return response


def test_http_fetcher_streams_to_disk_in_chunks(tmp_path: Path) -> None:
    session = StubSession({"https://builds.example.com/ffmpeg": FAKE_BINARY})
    fetcher = engine_loader.HttpFetcher(session=session, chunk_size=4)

    written = fetcher.download_to_file("https://builds.example.com/ffmpeg", tmp_path / "ffmpeg")

    assert written.read_bytes() == FAKE_BINARY
    assert session.requests == [("https://builds.example.com/ffmpeg", True)]
    assert session.responses[0].chunk_sizes == [4]


def test_http_fetcher_fetches_whole_body() -> None:
    session = StubSession({"https://builds.example.com/checksums.sha256": b"abc  ffmpeg\n"})
    fetcher = engine_loader.HttpFetcher(session=session)

    assert fetcher.fetch_bytes("https://builds.example.com/checksums.sha256") == b"abc  ffmpeg\n"
    assert session.requests == [("https://builds.example.com/checksums.sha256", False)]


@pytest.mark.parametrize("method", ["download_to_file", "fetch_bytes"])
def test_http_fetcher_raises_on_error_status(tmp_path: Path, method: str) -> None:
    fetcher = engine_loader.HttpFetcher(session=StubSession({}))
    url = "https://builds.example.com/missing"

    with pytest.raises(requests.HTTPError, match="404"):
        if method == "download_to_file":
            fetcher.download_to_file(url, tmp_path / "missing")
        else:
            fetcher.fetch_bytes(url)


def test_not_found_source_moves_to_next_over_http(tmp_path: Path, fake_version) -> None:
    gone = _source("mirror-a", stream_to_disk=False)
    working = _source("mirror-b")
    session = StubSession(_serve(working))  # type: ignore[arg-type]
    loader = EngineLoader(
        [gone, working],
        fetcher=engine_loader.HttpFetcher(session=session),
        use_bundled=False,
        workspace=tmp_path,
    )

    handle = loader.load()

    assert handle.source_name == "mirror-b"
    assert loader.attempts == ["mirror-a", "mirror-b"]
    assert handle.executable.read_bytes() == FAKE_BINARY


def test_load_engine_uses_one_process_wide_loader(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, fake_version
) -> None:
    source = _source("mirror-a")
    fetcher = FakeFetcher(_serve(source))
    monkeypatch.setattr(
        engine_loader,
        "_default_loader",
        EngineLoader([source], fetcher=fetcher, use_bundled=False, workspace=tmp_path),
    )

    first = engine_loader.load_engine()

    assert engine_loader.load_engine() is first
    assert engine_loader.get_default_loader().handle is first
    assert len(fetcher.calls) == 2
