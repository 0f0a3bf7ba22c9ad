from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

import diagnose_cli  # noqa: E402
from screen2site.models import ImageFormat  # noqa: E402


def test_cli_writes_report_and_exit_code(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    seen = {}

    def fake_collect(video_path, options, loader=None, frames_dir=None):
        seen.update(video_path=video_path, options=options, loader=loader, frames_dir=frames_dir)
        return {"extraction_run": {"success": True, "strategy": "opencv", "frame_count": 3}}

    monkeypatch.setattr(diagnose_cli, "collect_decode_diagnostics", fake_collect)
    report_path = tmp_path / "report.json"

    code = diagnose_cli.main(
        [
            "--video", str(tmp_path / "clip.mp4"),
            "--interval", "1.5",
            "--format", "jpg",
            "--no-bundled-engine",
            "--report-json", str(report_path),
        ]
    )

    assert code == 0
    assert json.loads(report_path.read_text(encoding="utf-8"))["extraction_run"]["frame_count"] == 3
    assert seen["options"].frame_interval == 1.5
    assert seen["options"].image_format is ImageFormat.JPG
    assert seen["loader"].use_bundled is False
    assert seen["frames_dir"] is None


def test_cli_failed_run_exits_nonzero(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        diagnose_cli,
        "collect_decode_diagnostics",
        lambda video_path, options, loader=None, frames_dir=None: {"extraction_run": {"success": False}},
    )

    code = diagnose_cli.main(["--video", "missing.mp4", "--report-json", str(tmp_path / "r.json")])

    assert code == 2
