from __future__ import annotations

import hashlib
import importlib
import logging
import os
import shutil
import stat
import subprocess
import sys
import tarfile
import tempfile
import threading
import zipfile
from pathlib import Path
from typing import Protocol, Sequence
from urllib.parse import urlsplit

import requests

from screen2site.errors import EngineInitError, ResourceUnavailable
from screen2site.models import EngineHandle, EngineSource

logger = logging.getLogger(__name__)

BUNDLED_SOURCE_NAME = "imageio-ffmpeg (bundled)"

BTBN_RELEASE_BASE = "https://github.com/BtbN/FFmpeg-Builds/releases/download/latest"
JVS_RELEASE_BASE = "https://johnvansickle.com/ffmpeg/releases"

LINUX64_ENGINE_SOURCES: tuple[EngineSource, ...] = (
    EngineSource(
        name="github BtbN n7.1 (streamed)",
        binary_url=f"{BTBN_RELEASE_BASE}/ffmpeg-n7.1-latest-linux64-gpl-7.1.tar.xz",
        manifest_url=f"{BTBN_RELEASE_BASE}/checksums.sha256",
        stream_to_disk=True,
    ),
    EngineSource(
        name="github BtbN n7.1 (direct fetch)",
        binary_url=f"{BTBN_RELEASE_BASE}/ffmpeg-n7.1-latest-linux64-gpl-7.1.tar.xz",
        manifest_url=f"{BTBN_RELEASE_BASE}/checksums.sha256",
        stream_to_disk=False,
    ),
    EngineSource(
        name="johnvansickle release (streamed)",
        binary_url=f"{JVS_RELEASE_BASE}/ffmpeg-release-amd64-static.tar.xz",
        manifest_url=f"{JVS_RELEASE_BASE}/ffmpeg-release-amd64-static.tar.xz.md5",
        stream_to_disk=True,
        digest="md5",
    ),
    EngineSource(
        name="github BtbN n6.1 (streamed)",
        binary_url=f"{BTBN_RELEASE_BASE}/ffmpeg-n6.1-latest-linux64-gpl-6.1.tar.xz",
        manifest_url=f"{BTBN_RELEASE_BASE}/checksums.sha256",
        stream_to_disk=True,
    ),
)

WIN64_ENGINE_SOURCES: tuple[EngineSource, ...] = (
    EngineSource(
        name="github BtbN n7.1 win64 (streamed)",
        binary_url=f"{BTBN_RELEASE_BASE}/ffmpeg-n7.1-latest-win64-gpl-7.1.zip",
        manifest_url=f"{BTBN_RELEASE_BASE}/checksums.sha256",
        stream_to_disk=True,
    ),
    EngineSource(
        name="github BtbN n7.1 win64 (direct fetch)",
        binary_url=f"{BTBN_RELEASE_BASE}/ffmpeg-n7.1-latest-win64-gpl-7.1.zip",
        manifest_url=f"{BTBN_RELEASE_BASE}/checksums.sha256",
        stream_to_disk=False,
    ),
    EngineSource(
        name="github BtbN n6.1 win64 (streamed)",
        binary_url=f"{BTBN_RELEASE_BASE}/ffmpeg-n6.1-latest-win64-gpl-6.1.zip",
        manifest_url=f"{BTBN_RELEASE_BASE}/checksums.sha256",
        stream_to_disk=True,
    ),
)

LOAD_FAILURE_HINTS = (
    "Possible causes:\n"
    "- Network connectivity issues (check your internet connection)\n"
    "- Proxy or firewall rules blocking downloads from the build hosts\n"
    "- Build host unavailable or release asset moved\n"
    "- No prebuilt ffmpeg binary runs on this platform\n\n"
    "Troubleshooting:\n"
    "1. Install the imageio-ffmpeg wheel for this platform\n"
    "2. Verify the machine can reach github.com and johnvansickle.com\n"
    "3. Retry later if a build host is temporarily down"
)


def default_engine_sources(platform_tag: str | None = None) -> tuple[EngineSource, ...]:
    tag = platform_tag or sys.platform
    if tag.startswith("win"):
        return WIN64_ENGINE_SOURCES
    return LINUX64_ENGINE_SOURCES


class Fetcher(Protocol):
    def download_to_file(self, url: str, dest: Path) -> Path: ...

    def fetch_bytes(self, url: str) -> bytes: ...


class HttpFetcher:
    """Both retrieval strategies an engine source can ask for."""

    def __init__(
        self,
        session: requests.Session | None = None,
        timeout: float = 120.0,
        chunk_size: int = 1 << 20,
    ) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout
        self.chunk_size = chunk_size

    def download_to_file(self, url: str, dest: Path) -> Path:
        with self.session.get(url, stream=True, timeout=self.timeout) as response:
            response.raise_for_status()
            with open(dest, "wb") as f:
                for chunk in response.iter_content(chunk_size=self.chunk_size):
                    if chunk:
                        f.write(chunk)
        return dest

    def fetch_bytes(self, url: str) -> bytes:
        response = self.session.get(url, timeout=self.timeout)
        response.raise_for_status()
        return response.content


def _url_basename(url: str) -> str:
    return Path(urlsplit(url).path).name or "payload"


def _probe_version(executable: Path) -> str:
    try:
        run = subprocess.run(
            [str(executable), "-version"],
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="ignore",
        )
    except OSError as exc:
        raise EngineInitError(f"Cannot execute {executable}: {exc}") from exc
    first_line = (run.stdout or "").strip().splitlines()[:1]
    if run.returncode != 0 or not first_line:
        details = (run.stderr or "").strip() or f"return code {run.returncode}"
        raise EngineInitError(f"ffmpeg -version failed: {details}")
    return first_line[0]


def _manifest_digest(manifest_text: str, payload_name: str) -> str | None:
    lines = [line.strip() for line in manifest_text.splitlines() if line.strip()]
    for line in lines:
        parts = line.split()
        if len(parts) >= 2 and Path(parts[-1].lstrip("*")).name == payload_name:
            return parts[0].lower()
    # Single-file manifests (e.g. "<file>.md5") may carry just the digest.
    if len(lines) == 1 and len(lines[0].split()) == 1:
        return lines[0].lower()
    return None


def _file_digest(path: Path, algorithm: str) -> str:
    try:
        hasher = hashlib.new(algorithm)
    except ValueError as exc:
        raise EngineInitError(f"Unsupported digest algorithm: {algorithm}") from exc
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(1 << 20), b""):
            hasher.update(block)
    return hasher.hexdigest()


def _unpack_executable(payload_path: Path, dest_dir: Path) -> Path:
    exe_name = "ffmpeg.exe" if os.name == "nt" else "ffmpeg"
    target = dest_dir / exe_name

    if tarfile.is_tarfile(payload_path):
        with tarfile.open(payload_path) as archive:
            member = next(
                (m for m in archive.getmembers() if m.isfile() and Path(m.name).name == exe_name),
                None,
            )
            if member is None:
                raise EngineInitError(f"{payload_path.name} does not contain {exe_name}")
            extracted = archive.extractfile(member)
            if extracted is None:
                raise EngineInitError(f"Cannot read {member.name} from {payload_path.name}")
            with extracted, open(target, "wb") as out:
                shutil.copyfileobj(extracted, out)
    elif zipfile.is_zipfile(payload_path):
        with zipfile.ZipFile(payload_path) as archive:
            info = next(
                (i for i in archive.infolist() if not i.is_dir() and Path(i.filename).name == exe_name),
                None,
            )
            if info is None:
                raise EngineInitError(f"{payload_path.name} does not contain {exe_name}")
            with archive.open(info) as extracted, open(target, "wb") as out:
                shutil.copyfileobj(extracted, out)
    else:
        target = payload_path

    target.chmod(target.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return target


class EngineLoader:
    """Lazily resolves one ffmpeg engine and keeps it for the life of the process.

    Sources are tried in order; the first one that downloads, verifies and
    runs wins and the rest are never touched. Failures are not cached, so a
    later ``load()`` walks the full source list again.
    """

    def __init__(
        self,
        sources: Sequence[EngineSource] | None = None,
        fetcher: Fetcher | None = None,
        use_bundled: bool = True,
        workspace: Path | None = None,
        timeout: float = 120.0,
    ) -> None:
        self.sources: tuple[EngineSource, ...] = tuple(
            default_engine_sources() if sources is None else sources
        )
        self.fetcher: Fetcher = fetcher or HttpFetcher(timeout=timeout)
        self.use_bundled = use_bundled
        self.workspace = Path(workspace) if workspace is not None else None
        self.attempts: list[str] = []
        self._handle: EngineHandle | None = None
        self._lock = threading.Lock()

    @property
    def handle(self) -> EngineHandle | None:
        return self._handle

    def load(self) -> EngineHandle:
        handle = self._handle
        if handle is not None:
            return handle
        with self._lock:
            if self._handle is None:
                self._handle = self._load_uncached()
            return self._handle

    def reset(self) -> None:
        with self._lock:
            self._handle = None
            self.attempts.clear()

    def _load_uncached(self) -> EngineHandle:
        if self.use_bundled:
            bundled = self._resolve_bundled()
            if bundled is not None:
                logger.info("[engine] Using %s: %s", bundled.source_name, bundled.version)
                return bundled

        last_error: Exception | None = None
        for idx, source in enumerate(self.sources):
            self.attempts.append(source.name)
            logger.info("[engine] Attempting to load ffmpeg using: %s", source.name)
            source_dir = self._workspace_dir() / f"source_{idx:02d}"
            source_dir.mkdir(parents=True, exist_ok=True)
            try:
                payload_path, manifest_text = self._retrieve(source, source_dir)
                handle = self._initialize(source, payload_path, manifest_text, source_dir)
            except Exception as exc:
                logger.warning("[engine] Failed to load using %s: %s", source.name, exc)
                shutil.rmtree(source_dir, ignore_errors=True)
                last_error = exc
                continue
            logger.info("[engine] ffmpeg loaded successfully using: %s", source.name)
            return handle

        logger.error("[engine] Failed to load ffmpeg from all sources: %s", last_error)
        raise ResourceUnavailable(
            attempts=len(self.sources),
            last_error=str(last_error) if last_error is not None else "no engine sources configured",
            hints=LOAD_FAILURE_HINTS,
        )

    def _resolve_bundled(self) -> EngineHandle | None:
        try:
            imageio_ffmpeg = importlib.import_module("imageio_ffmpeg")
            executable = Path(imageio_ffmpeg.get_ffmpeg_exe())
            version = _probe_version(executable)
        except Exception as exc:
            logger.info("[engine] Bundled ffmpeg unavailable: %s", exc)
            return None
        return EngineHandle(executable=executable, version=version, source_name=BUNDLED_SOURCE_NAME)

    def _workspace_dir(self) -> Path:
        if self.workspace is None:
            self.workspace = Path(tempfile.mkdtemp(prefix="screen2site-ffmpeg-"))
        self.workspace.mkdir(parents=True, exist_ok=True)
        return self.workspace

    def _retrieve(self, source: EngineSource, dest_dir: Path) -> tuple[Path, str]:
        payload_path = dest_dir / _url_basename(source.binary_url)
        manifest_path = dest_dir / f"manifest_{_url_basename(source.manifest_url)}"
        if source.stream_to_disk:
            self.fetcher.download_to_file(source.binary_url, payload_path)
            self.fetcher.download_to_file(source.manifest_url, manifest_path)
            manifest_text = manifest_path.read_text(encoding="utf-8", errors="ignore")
        else:
            payload_path.write_bytes(self.fetcher.fetch_bytes(source.binary_url))
            manifest_text = self.fetcher.fetch_bytes(source.manifest_url).decode("utf-8", errors="ignore")
        return payload_path, manifest_text

    def _initialize(
        self,
        source: EngineSource,
        payload_path: Path,
        manifest_text: str,
        dest_dir: Path,
    ) -> EngineHandle:
        expected = _manifest_digest(manifest_text, payload_path.name)
        if expected is None:
            raise EngineInitError(f"No {source.digest} entry for {payload_path.name} in manifest")
        actual = _file_digest(payload_path, source.digest)
        if actual != expected:
            raise EngineInitError(
                f"Checksum mismatch for {payload_path.name}: expected {expected}, got {actual}"
            )
        executable = _unpack_executable(payload_path, dest_dir)
        version = _probe_version(executable)
        return EngineHandle(executable=executable, version=version, source_name=source.name)


_default_loader: EngineLoader | None = None
_default_loader_lock = threading.Lock()


def get_default_loader() -> EngineLoader:
    global _default_loader
    with _default_loader_lock:
        if _default_loader is None:
            _default_loader = EngineLoader()
        return _default_loader


def load_engine() -> EngineHandle:
    return get_default_loader().load()
