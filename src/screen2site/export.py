from __future__ import annotations

import io
import zipfile
from datetime import datetime
from pathlib import Path
from typing import Iterable

from screen2site.models import BundleFile, GeneratedBundle

ARCHIVE_NAME = "generated-website.zip"


def build_readme(files: Iterable[BundleFile], generated_at: datetime) -> str:
    listing = "\n".join(f"- {f.path}" for f in files)
    return (
        "# Generated Website\n\n"
        "This website was generated from a video using AI.\n\n"
        "## Files\n"
        f"{listing}\n\n"
        "## Usage\n"
        "1. Open index.html in a web browser\n"
        "2. Or serve using a local server:\n"
        "   ```bash\n"
        "   python -m http.server\n"
        "   ```\n\n"
        f"Generated on {generated_at:%Y-%m-%d %H:%M:%S}\n"
    )


def build_site_archive(bundle: GeneratedBundle, generated_at: datetime | None = None) -> bytes:
    generated_at = generated_at or datetime.now()
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for bundle_file in bundle.files:
            archive.writestr(bundle_file.path, bundle_file.content)
        archive.writestr("README.md", build_readme(bundle.files, generated_at))
    return buffer.getvalue()


def write_site_archive(bundle: GeneratedBundle, output_path: Path, generated_at: datetime | None = None) -> Path:
    output_path = Path(output_path)
    if output_path.is_dir():
        output_path = output_path / ARCHIVE_NAME
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(build_site_archive(bundle, generated_at))
    return output_path
