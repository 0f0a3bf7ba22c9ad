from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Iterator, Mapping

MAX_UPLOAD_BYTES = 100 * 1024 * 1024


class ImageFormat(str, Enum):
    PNG = "png"
    JPG = "jpg"

    @property
    def mime_type(self) -> str:
        return "image/jpeg" if self is ImageFormat.JPG else "image/png"

    @property
    def extension(self) -> str:
        return f".{self.value}"


@dataclass(slots=True)
class ExtractionOptions:
    frame_interval: float = 2.0
    max_width: int = 800
    image_format: ImageFormat = ImageFormat.PNG
    jpg_quality: int = 95

    def normalized_interval(self) -> float:
        interval = float(self.frame_interval)
        if not math.isfinite(interval) or interval <= 0:
            return 2.0
        return interval

    def normalized_max_width(self) -> int:
        return max(16, int(self.max_width))

    def normalized_jpg_quality(self) -> int:
        return min(100, max(1, int(self.jpg_quality)))


@dataclass(slots=True)
class VideoInput:
    """Video payload handed over by the upload step: bytes plus declared type."""

    data: bytes
    media_type: str = "video/mp4"
    name: str = "input.mp4"

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def suffix(self) -> str:
        return Path(self.name).suffix.lower() or ".mp4"

    @classmethod
    def from_path(cls, path: Path, media_type: str | None = None) -> "VideoInput":
        path = Path(path)
        if media_type is None:
            media_type = _guess_video_media_type(path)
        return cls(data=path.read_bytes(), media_type=media_type, name=path.name)


_VIDEO_MEDIA_TYPES: dict[str, str] = {
    ".mp4": "video/mp4",
    ".m4v": "video/mp4",
    ".mov": "video/quicktime",
    ".webm": "video/webm",
    ".mkv": "video/x-matroska",
    ".avi": "video/x-msvideo",
}


def _guess_video_media_type(path: Path) -> str:
    return _VIDEO_MEDIA_TYPES.get(path.suffix.lower(), "application/octet-stream")


def validate_upload(video: VideoInput) -> str | None:
    """Return an error message when the upload step should reject the file."""
    if not video.media_type.startswith("video/"):
        return "Please upload a valid video file"
    if video.size > MAX_UPLOAD_BYTES:
        return "Video file is too large. Maximum size is 100MB"
    return None


@dataclass(frozen=True, slots=True)
class EngineSource:
    name: str
    binary_url: str
    manifest_url: str
    stream_to_disk: bool = True
    digest: str = "sha256"


@dataclass(frozen=True, slots=True)
class EngineHandle:
    executable: Path
    version: str
    source_name: str


@dataclass(frozen=True, slots=True)
class Frame:
    index: int
    timestamp: float
    data_url: str


@dataclass(frozen=True, slots=True)
class FrameSequence:
    frames: tuple[Frame, ...]
    frame_interval: float
    expected_count: int
    strategy: str

    def __len__(self) -> int:
        return len(self.frames)

    def __iter__(self) -> Iterator[Frame]:
        return iter(self.frames)

    @property
    def timestamps(self) -> list[float]:
        return [frame.timestamp for frame in self.frames]

    def data_urls(self) -> list[str]:
        return [frame.data_url for frame in self.frames]

    @property
    def missing_count(self) -> int:
        return max(0, self.expected_count - len(self.frames))

    @property
    def loss_ratio(self) -> float:
        if self.expected_count <= 0:
            return 0.0
        return self.missing_count / self.expected_count


class ComponentType(str, Enum):
    BUTTON = "button"
    INPUT = "input"
    FORM = "form"
    NAVIGATION = "navigation"
    CARD = "card"
    MODAL = "modal"
    SLIDER = "slider"
    OTHER = "other"

    @classmethod
    def parse(cls, value: object) -> "ComponentType":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.OTHER


@dataclass(frozen=True, slots=True)
class ComponentPosition:
    x: float
    y: float
    width: float
    height: float


@dataclass(frozen=True, slots=True)
class DetectedComponent:
    """One UI element reported by the frame analysis step."""

    id: str
    type: ComponentType
    label: str
    description: str
    confidence: float
    position: ComponentPosition | None = None
    frame_index: int | None = None


class BundlePart(str, Enum):
    HTML = "html"
    CSS = "css"
    JS = "js"

    @property
    def path(self) -> str:
        return BUNDLE_PATHS[self]


BUNDLE_PATHS: dict[BundlePart, str] = {
    BundlePart.HTML: "index.html",
    BundlePart.CSS: "styles.css",
    BundlePart.JS: "script.js",
}


@dataclass(frozen=True, slots=True)
class BundleFile:
    path: str
    content: str
    type: BundlePart


@dataclass(frozen=True, slots=True)
class GeneratedBundle:
    markup: BundleFile
    stylesheet: BundleFile
    script: BundleFile
    strategies: Mapping[BundlePart, str] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        # Read-only view so the recorded strategies cannot change after parsing.
        object.__setattr__(self, "strategies", MappingProxyType(dict(self.strategies)))

    @classmethod
    def from_contents(
        cls,
        html: str,
        css: str,
        js: str,
        strategies: Mapping[BundlePart, str] | None = None,
    ) -> "GeneratedBundle":
        return cls(
            markup=BundleFile(BundlePart.HTML.path, html, BundlePart.HTML),
            stylesheet=BundleFile(BundlePart.CSS.path, css, BundlePart.CSS),
            script=BundleFile(BundlePart.JS.path, js, BundlePart.JS),
            strategies=strategies or {},
        )

    @property
    def files(self) -> tuple[BundleFile, BundleFile, BundleFile]:
        return (self.markup, self.stylesheet, self.script)

    @property
    def code(self) -> str:
        return self.markup.content
