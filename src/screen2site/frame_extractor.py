from __future__ import annotations

import base64
import importlib
import logging
import math
import platform
import re
import shutil
import subprocess
import sys
import tempfile
from enum import Enum
from pathlib import Path
from typing import Callable

import cv2
import numpy as np

from screen2site.engine_loader import EngineLoader, get_default_loader, load_engine
from screen2site.errors import DecodeFailure, EmptyExtraction, ExtractionExhausted
from screen2site.models import ExtractionOptions, Frame, FrameSequence, ImageFormat, VideoInput

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

ENGINE_INPUT_NAME = "input.mp4"
DEFAULT_DURATION_SEC = 10.0
DURATION_PATTERN = re.compile(r"Duration:\s*(\d{2}):(\d{2}):(\d{2})\.(\d{2})")

# Any of these in the probe output means no frame request can succeed.
ENGINE_FATAL_MARKERS: tuple[str, ...] = (
    "Invalid data found when processing input",
    "moov atom not found",
    "No such file or directory",
)

CV2_BACKEND_ORDER: tuple[str, ...] = (
    "default",
    # Prefer legacy Windows system decoders before OpenCV ffmpeg backend.
    "CAP_DSHOW",
    "CAP_MSMF",
    "CAP_FFMPEG",
)

STRATEGY_ENGINE = "ffmpeg"
STRATEGY_CV2 = "opencv"


class ExtractionState(str, Enum):
    IDLE = "idle"
    TRYING_PRIMARY = "trying_primary"
    TRYING_FALLBACK = "trying_fallback"
    DONE = "done"
    FAILED = "failed"


def frame_count_for_duration(duration: float, interval: float) -> int:
    if not math.isfinite(duration) or duration <= 0:
        return 0
    return max(0, math.ceil(duration / interval - 1e-9))


def make_unique_output_dir(video_stem: str, root_output: Path) -> Path:
    root_output.mkdir(parents=True, exist_ok=True)
    candidate = root_output / video_stem
    if not candidate.exists():
        candidate.mkdir(parents=True, exist_ok=False)
        return candidate

    suffix = 2
    while True:
        candidate = root_output / f"{video_stem}__{suffix}"
        if not candidate.exists():
            candidate.mkdir(parents=True, exist_ok=False)
            return candidate
        suffix += 1


def _report(progress_cb: ProgressCallback | None, percent: float) -> None:
    if progress_cb:
        progress_cb(min(100.0, max(0.0, float(percent))))


def _to_data_url(data: bytes, image_format: ImageFormat) -> str:
    return f"data:{image_format.mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def decode_data_url(data_url: str) -> bytes:
    _, _, payload = data_url.partition(",")
    return base64.b64decode(payload)


def _encode_frame(frame: np.ndarray, image_format: ImageFormat, jpg_quality: int) -> bytes | None:
    if image_format == ImageFormat.JPG:
        params = [cv2.IMWRITE_JPEG_QUALITY, jpg_quality]
    else:
        params = []

    ok, encoded = cv2.imencode(image_format.extension, frame, params)
    if not ok:
        return None
    return encoded.tobytes()


def _capped_size(width: int, height: int, max_width: int) -> tuple[int, int]:
    if width <= max_width:
        return width, height
    return max_width, max(1, int(round(height * max_width / width)))


def _jpg_quality_to_ffmpeg_qscale(jpg_quality: int) -> int:
    # ffmpeg jpg quality uses 2(best)-31(worst), inverse of 1-100 slider.
    q = max(1, min(100, int(jpg_quality)))
    return int(round(((100 - q) / 99) * 29 + 2))


def _run_engine(cmd: list[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(cmd, capture_output=True, text=True, encoding="utf-8", errors="ignore")


def _probe_engine_duration(executable: Path, input_path: Path) -> float:
    run = _run_engine([str(executable), "-hide_banner", "-i", str(input_path), "-f", "null", "-"])
    output = f"{run.stderr or ''}\n{run.stdout or ''}"

    for marker in ENGINE_FATAL_MARKERS:
        if marker in output:
            raise DecodeFailure(f"ffmpeg cannot read the video: {marker}")
    if "Input #0" in output and "Video:" not in output:
        raise DecodeFailure("ffmpeg found no video stream in the input")

    match = DURATION_PATTERN.search(output)
    if match is None:
        logger.warning("[primary] Could not read duration, assuming %.0fs", DEFAULT_DURATION_SEC)
        return DEFAULT_DURATION_SEC
    hours, minutes, seconds, centis = (int(group) for group in match.groups())
    return hours * 3600 + minutes * 60 + seconds + centis / 100


def _capture_engine_frame(
    executable: Path,
    input_path: Path,
    out_path: Path,
    timestamp: float,
    options: ExtractionOptions,
) -> bytes:
    cmd: list[str] = [
        str(executable),
        "-hide_banner",
        "-loglevel",
        "error",
        "-ss",
        f"{timestamp:.3f}",
        "-i",
        str(input_path),
        "-frames:v",
        "1",
        "-vf",
        f"scale={options.normalized_max_width()}:-1",
    ]
    if options.image_format == ImageFormat.JPG:
        cmd.extend(["-q:v", str(_jpg_quality_to_ffmpeg_qscale(options.normalized_jpg_quality()))])
    cmd.extend(["-y", str(out_path)])

    run = _run_engine(cmd)
    if not out_path.exists() or out_path.stat().st_size == 0:
        details = (run.stderr or "").strip() or (run.stdout or "").strip() or f"ffmpeg return code {run.returncode}"
        raise DecodeFailure(details)
    return out_path.read_bytes()


def _extract_with_engine(
    video: VideoInput,
    options: ExtractionOptions,
    progress_cb: ProgressCallback | None,
    loader: EngineLoader | None = None,
) -> FrameSequence:
    engine = loader.load() if loader is not None else load_engine()
    interval = options.normalized_interval()
    image_format = options.image_format
    frames: list[Frame] = []

    workspace = Path(tempfile.mkdtemp(prefix="screen2site-engine-"))
    try:
        input_path = workspace / ENGINE_INPUT_NAME
        try:
            input_path.write_bytes(video.data)
            duration = _probe_engine_duration(engine.executable, input_path)
        except OSError as exc:
            raise DecodeFailure(f"ffmpeg could not process {video.name}: {exc}") from exc

        total = frame_count_for_duration(duration, interval)
        _report(progress_cb, 0.0)

        for index in range(total):
            timestamp = index * interval
            out_path = workspace / f"frame_{index:06d}{image_format.extension}"
            try:
                data = _capture_engine_frame(engine.executable, input_path, out_path, timestamp, options)
            except OSError as exc:
                raise DecodeFailure(f"ffmpeg could not be started: {exc}") from exc
            except DecodeFailure as exc:
                logger.warning("[primary] Failed to extract frame at %ss: %s", f"{timestamp:g}", exc)
            else:
                frames.append(Frame(index=index, timestamp=timestamp, data_url=_to_data_url(data, image_format)))
            finally:
                out_path.unlink(missing_ok=True)
            _report(progress_cb, (index + 1) / total * 100)

        input_path.unlink(missing_ok=True)
    finally:
        shutil.rmtree(workspace, ignore_errors=True)

    if not frames:
        raise EmptyExtraction(f"ffmpeg produced no frames from {video.name}")
    if len(frames) < total:
        logger.warning(
            "[primary] Extracted %d of %d frames from %s (%.0f%% lost)",
            len(frames),
            total,
            video.name,
            (total - len(frames)) / total * 100,
        )
    return FrameSequence(
        frames=tuple(frames),
        frame_interval=interval,
        expected_count=total,
        strategy=STRATEGY_ENGINE,
    )


def _cv2_backend_candidates() -> list[tuple[str, int | None]]:
    backend_candidates: list[tuple[str, int | None]] = [("default", None)]
    for backend_name in CV2_BACKEND_ORDER:
        if backend_name == "default":
            continue
        backend_id = getattr(cv2, backend_name, None)
        if isinstance(backend_id, int):
            backend_candidates.append((backend_name.lower(), backend_id))

    seen_backend_ids: set[int | None] = set()
    unique_candidates: list[tuple[str, int | None]] = []
    for name, backend_id in backend_candidates:
        if backend_id in seen_backend_ids:
            continue
        seen_backend_ids.add(backend_id)
        unique_candidates.append((name, backend_id))
    return unique_candidates


def _open_capture(video_path: Path):
    for backend_name, backend_id in _cv2_backend_candidates():
        cap = cv2.VideoCapture(str(video_path)) if backend_id is None else cv2.VideoCapture(str(video_path), backend_id)
        if cap.isOpened():
            return cap, backend_name
        cap.release()
    return None, ""


def _extract_with_cv2(
    video: VideoInput,
    options: ExtractionOptions,
    progress_cb: ProgressCallback | None,
) -> FrameSequence:
    interval = options.normalized_interval()
    max_width = options.normalized_max_width()
    image_format = options.image_format
    jpg_quality = options.normalized_jpg_quality()
    frames: list[Frame] = []

    tmp_dir = Path(tempfile.mkdtemp(prefix="screen2site-cv2-"))
    cap = None
    try:
        video_path = tmp_dir / f"input{video.suffix}"
        try:
            video_path.write_bytes(video.data)
        except OSError as exc:
            raise DecodeFailure(f"Failed to stage {video.name} for OpenCV: {exc}") from exc

        cap, backend_name = _open_capture(video_path)
        if cap is None:
            raise DecodeFailure(f"OpenCV could not open {video.name}")

        fps = float(cap.get(cv2.CAP_PROP_FPS) or 0.0)
        frame_count = float(cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0.0)
        width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH) or 0)
        height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0)
        if not (math.isfinite(fps) and fps > 0 and math.isfinite(frame_count) and frame_count > 0):
            raise DecodeFailure(f"Video metadata unavailable for {video.name} (fps={fps}, frames={frame_count})")

        duration = frame_count / fps
        total = frame_count_for_duration(duration, interval)
        out_size = _capped_size(width, height, max_width) if width > 0 and height > 0 else None
        logger.info(
            "[fallback] Decoding %s with OpenCV backend %s (%.2fs, %d frame(s))",
            video.name,
            backend_name,
            duration,
            total,
        )
        _report(progress_cb, 0.0)

        for index in range(total):
            timestamp = index * interval
            if not cap.set(cv2.CAP_PROP_POS_MSEC, timestamp * 1000.0):
                raise DecodeFailure(f"Video error: seek to {timestamp:g}s failed")
            ok, frame = cap.read()
            if not ok or frame is None:
                raise DecodeFailure(f"Video error: no frame decoded at {timestamp:g}s")

            if out_size is None:
                out_size = _capped_size(frame.shape[1], frame.shape[0], max_width)
            if (frame.shape[1], frame.shape[0]) != out_size:
                frame = cv2.resize(frame, out_size, interpolation=cv2.INTER_AREA)

            data = _encode_frame(frame, image_format, jpg_quality)
            if data is None:
                raise DecodeFailure(f"Failed to encode frame at {timestamp:g}s")
            frames.append(Frame(index=index, timestamp=timestamp, data_url=_to_data_url(data, image_format)))
            _report(progress_cb, len(frames) / total * 100)
    finally:
        if cap is not None:
            cap.release()
        shutil.rmtree(tmp_dir, ignore_errors=True)

    if not frames:
        raise EmptyExtraction(f"OpenCV produced no frames from {video.name}")
    return FrameSequence(
        frames=tuple(frames),
        frame_interval=interval,
        expected_count=total,
        strategy=STRATEGY_CV2,
    )


class ExtractionOrchestrator:
    """Runs the ffmpeg path and falls back to OpenCV once if it fails."""

    def __init__(self, options: ExtractionOptions | None = None, loader: EngineLoader | None = None) -> None:
        self.options = options or ExtractionOptions()
        self.loader = loader
        self.state = ExtractionState.IDLE
        self.primary_error: Exception | None = None
        self.fallback_error: Exception | None = None

    def run(self, video: VideoInput, progress_cb: ProgressCallback | None = None) -> FrameSequence:
        self.state = ExtractionState.TRYING_PRIMARY
        self.primary_error = None
        self.fallback_error = None
        logger.info("[primary] Attempting to extract frames from %s using ffmpeg", video.name)
        try:
            sequence = _extract_with_engine(video, self.options, progress_cb, self.loader)
        except Exception as primary_exc:
            self.primary_error = primary_exc
            self.state = ExtractionState.TRYING_FALLBACK
            logger.warning("[fallback] ffmpeg extraction failed, falling back to OpenCV: %s", primary_exc)
            try:
                sequence = _extract_with_cv2(video, self.options, progress_cb)
            except Exception as fallback_exc:
                self.fallback_error = fallback_exc
                self.state = ExtractionState.FAILED
                logger.error("[fallback] Both ffmpeg and OpenCV extraction failed: %s", fallback_exc)
                raise ExtractionExhausted(primary_exc, fallback_exc) from fallback_exc

        self.state = ExtractionState.DONE
        logger.info("[%s] Extracted %d frame(s) from %s", sequence.strategy, len(sequence), video.name)
        return sequence


def extract_frames(
    video: VideoInput | Path | str,
    options: ExtractionOptions | None = None,
    progress_cb: ProgressCallback | None = None,
    loader: EngineLoader | None = None,
) -> FrameSequence:
    if not isinstance(video, VideoInput):
        video = VideoInput.from_path(Path(video))
    return ExtractionOrchestrator(options=options, loader=loader).run(video, progress_cb)


def write_frames(sequence: FrameSequence, output_dir: Path, stem: str) -> list[Path]:
    written: list[Path] = []
    for frame in sequence:
        header = frame.data_url.split(",", 1)[0]
        ext = ".jpg" if "image/jpeg" in header else ".png"
        out_path = output_dir / f"{stem}_{frame.index:06d}{ext}"
        out_path.write_bytes(decode_data_url(frame.data_url))
        written.append(out_path)
    return written


def _safe_import_version(module_name: str) -> str:
    try:
        module = importlib.import_module(module_name)
        return str(getattr(module, "__version__", "unknown"))
    except Exception as exc:
        return f"unavailable: {exc}"


def _probe_cv2_backend(video_path: Path, backend_name: str, backend_id: int | None) -> dict[str, object]:
    cap = cv2.VideoCapture(str(video_path)) if backend_id is None else cv2.VideoCapture(str(video_path), backend_id)
    opened = bool(cap.isOpened())
    read_ok = False
    width = 0
    height = 0
    fps = 0.0
    frame_count = 0.0
    if opened:
        fps = float(cap.get(cv2.CAP_PROP_FPS) or 0.0)
        width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH) or 0)
        height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0)
        frame_count = float(cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0.0)
        ok, frame = cap.read()
        read_ok = bool(ok and frame is not None)
    cap.release()
    return {
        "backend": backend_name,
        "opened": opened,
        "read_first_frame": read_ok,
        "fps": fps,
        "width": width,
        "height": height,
        "frame_count": frame_count,
    }


def _probe_engine(loader: EngineLoader) -> dict[str, object]:
    try:
        handle = loader.load()
    except Exception as exc:
        return {"available": False, "attempts": list(loader.attempts), "error": str(exc)}
    return {
        "available": True,
        "source": handle.source_name,
        "version": handle.version,
        "executable": str(handle.executable),
        "attempts": list(loader.attempts),
    }


def collect_decode_diagnostics(
    video_path: Path,
    options: ExtractionOptions,
    loader: EngineLoader | None = None,
    frames_dir: Path | None = None,
) -> dict[str, object]:
    video_path = Path(video_path)
    loader = loader or get_default_loader()

    env: dict[str, object] = {
        "platform": platform.platform(),
        "python": sys.version.split()[0],
        "cv2_version": cv2.__version__,
        "imageio_ffmpeg_version": _safe_import_version("imageio_ffmpeg"),
        "requests_version": _safe_import_version("requests"),
        "video_path": str(video_path),
        "video_exists": video_path.exists(),
        "video_size_bytes": int(video_path.stat().st_size) if video_path.exists() else 0,
        "cv2_backend_order": [name for name, _ in _cv2_backend_candidates()],
    }

    engine_probe = _probe_engine(loader)
    cv2_probe = [_probe_cv2_backend(video_path, name, backend_id) for name, backend_id in _cv2_backend_candidates()]

    progress_log: list[float] = []
    orchestrator = ExtractionOrchestrator(options=options, loader=loader)
    run: dict[str, object] = {"progress_log": progress_log}
    try:
        sequence = orchestrator.run(VideoInput.from_path(video_path), progress_cb=progress_log.append)
    except Exception as exc:
        run.update({"success": False, "message": str(exc)})
    else:
        run.update(
            {
                "success": True,
                "strategy": sequence.strategy,
                "frame_count": len(sequence),
                "expected_count": sequence.expected_count,
                "loss_ratio": sequence.loss_ratio,
                "timestamps": sequence.timestamps,
            }
        )
        if frames_dir is not None:
            output_dir = make_unique_output_dir(video_path.stem, Path(frames_dir))
            written = write_frames(sequence, output_dir, video_path.stem)
            run["output_dir"] = str(output_dir)
            run["written_files"] = len(written)
    run["state"] = orchestrator.state.value
    if orchestrator.primary_error is not None:
        run["primary_error"] = str(orchestrator.primary_error)

    return {
        "environment": env,
        "probe": {
            "engine": engine_probe,
            "cv2": cv2_probe,
        },
        "extraction_run": run,
    }
