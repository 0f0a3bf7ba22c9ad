from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from screen2site.engine_loader import EngineLoader
from screen2site.frame_extractor import collect_decode_diagnostics
from screen2site.models import ExtractionOptions, ImageFormat


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Frame extraction diagnostics for engine loading and decoder fallback issues.",
    )
    parser.add_argument("--video", required=True, help="Target video file path")
    parser.add_argument("--interval", type=float, default=2.0, help="Seconds between sampled frames")
    parser.add_argument("--max-width", type=int, default=800, help="Maximum frame width in pixels")
    parser.add_argument(
        "--format",
        choices=["png", "jpg"],
        default="png",
        help="Image format of the extracted frames",
    )
    parser.add_argument(
        "--no-bundled-engine",
        action="store_true",
        help="Skip the imageio-ffmpeg binary and resolve ffmpeg from the remote sources only",
    )
    parser.add_argument("--frames-dir", default=None, help="Write extracted frames below this directory")
    parser.add_argument(
        "--report-json",
        default="decode_diagnostic_report.json",
        help="Output report path (json)",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    image_format = ImageFormat.JPG if args.format == "jpg" else ImageFormat.PNG
    options = ExtractionOptions(
        frame_interval=args.interval,
        max_width=args.max_width,
        image_format=image_format,
    )
    report = collect_decode_diagnostics(
        video_path=Path(args.video),
        options=options,
        loader=EngineLoader(use_bundled=not args.no_bundled_engine),
        frames_dir=Path(args.frames_dir) if args.frames_dir else None,
    )

    report_path = Path(args.report_json)
    report_path.write_text(
        json.dumps(report, indent=2, ensure_ascii=False),
        encoding="utf-8",
    )

    run = report.get("extraction_run", {})
    print(f"[diagnostic] report: {report_path.resolve()}")
    print(f"[diagnostic] success: {run.get('success')}, strategy: {run.get('strategy', '-')}, frames: {run.get('frame_count', 0)}")
    return 0 if run.get("success") else 2


if __name__ == "__main__":
    raise SystemExit(main())
