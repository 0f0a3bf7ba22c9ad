"""Turn free-form model output into the three-file site bundle.

Generated text rarely follows the requested layout exactly, so several
independent extraction strategies run in a fixed order. Each one returns the
parts it could recover; the first strategy to recover a part wins it. After
the cascade the markup must be present and substantial, while a missing
stylesheet or script is replaced by a placeholder comment.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable

from screen2site.errors import BundleIncomplete, TemplateLeakError
from screen2site.models import BundlePart, GeneratedBundle

logger = logging.getLogger(__name__)

MIN_MARKUP_LENGTH = 50

DEFAULT_STYLESHEET = "/* CSS will be generated based on your components */"
DEFAULT_SCRIPT = "// JavaScript will be generated based on your components"

# Signature phrases of the built-in placeholder site.
TEMPLATE_SIGNATURES: tuple[str, ...] = ("My Website", "Generated Website")

SECTION_MARKER = re.compile(r"===\s*(HTML|CSS|JS)\s*===", re.IGNORECASE)

FENCED_BLOCK = re.compile(r"```[ \t]*([\w+-]*)[^\n]*\n(.*?)```", re.DOTALL)
FENCE_LANGUAGES: dict[str, BundlePart] = {
    "html": BundlePart.HTML,
    "htm": BundlePart.HTML,
    "css": BundlePart.CSS,
    "js": BundlePart.JS,
    "javascript": BundlePart.JS,
}

HTML_ELEMENT = re.compile(r"(?:<!DOCTYPE[^>]*>\s*)?<html\b.*?</html\s*>", re.IGNORECASE | re.DOTALL)
STYLE_TAG = re.compile(r"<style\b[^>]*>(.*?)</style\s*>", re.IGNORECASE | re.DOTALL)
INLINE_SCRIPT_TAG = re.compile(r"<script\b(?![^>]*\bsrc\s*=)[^>]*>(.*?)</script\s*>", re.IGNORECASE | re.DOTALL)

# Also accepts output that was cut off before the closing tag.
DOCUMENT_SPAN = re.compile(r"(?:<!DOCTYPE\b|<html\b).*?(?:</html\s*>|\Z)", re.IGNORECASE | re.DOTALL)

HEADER_KEYWORDS: tuple[tuple[BundlePart, re.Pattern[str]], ...] = (
    (BundlePart.HTML, re.compile(r"\bhtml\b", re.IGNORECASE)),
    (BundlePart.CSS, re.compile(r"\bcss\b", re.IGNORECASE)),
    (BundlePart.JS, re.compile(r"\b(?:javascript|js)\b", re.IGNORECASE)),
)
HEADER_MAX_LENGTH = 80
CODE_CHARACTERS = frozenset("<>{};=()")

LEADING_FENCE = re.compile(r"^\s*```[\w+-]*[^\n]*\n?")
TRAILING_FENCE = re.compile(r"\n?\s*```\s*$")


@dataclass(frozen=True, slots=True)
class ExtractionAttempt:
    strategy: str
    parts: dict[BundlePart, str] = field(default_factory=dict)

    @property
    def found(self) -> bool:
        return any(content.strip() for content in self.parts.values())


def extract_section_markers(text: str) -> ExtractionAttempt:
    parts: dict[BundlePart, str] = {}
    markers = list(SECTION_MARKER.finditer(text))
    for idx, marker in enumerate(markers):
        end = markers[idx + 1].start() if idx + 1 < len(markers) else len(text)
        part = BundlePart(marker.group(1).lower())
        content = text[marker.end():end].strip()
        if content and part not in parts:
            parts[part] = content
    return ExtractionAttempt("section_markers", parts)


def extract_tagged_blocks(text: str) -> ExtractionAttempt:
    parts: dict[BundlePart, str] = {}
    untagged_markup: str | None = None
    for match in FENCED_BLOCK.finditer(text):
        language, body = match.group(1).lower(), match.group(2)
        if not body.strip():
            continue
        part = FENCE_LANGUAGES.get(language)
        if part is not None:
            parts.setdefault(part, body)
        elif not language and untagged_markup is None and body.lstrip().startswith("<"):
            untagged_markup = body

    if BundlePart.HTML not in parts and untagged_markup is not None:
        parts[BundlePart.HTML] = untagged_markup
    if BundlePart.HTML not in parts:
        element = HTML_ELEMENT.search(text)
        if element:
            parts[BundlePart.HTML] = element.group(0)
    if BundlePart.CSS not in parts:
        style = STYLE_TAG.search(text)
        if style and style.group(1).strip():
            parts[BundlePart.CSS] = style.group(1)
    if BundlePart.JS not in parts:
        script = INLINE_SCRIPT_TAG.search(text)
        if script and script.group(1).strip():
            parts[BundlePart.JS] = script.group(1)
    return ExtractionAttempt("tagged_blocks", parts)


def extract_whole_document(text: str) -> ExtractionAttempt:
    document = DOCUMENT_SPAN.search(text)
    if document is None:
        return ExtractionAttempt("whole_document")

    markup = document.group(0)
    parts: dict[BundlePart, str] = {BundlePart.HTML: markup}
    style = STYLE_TAG.search(markup)
    if style:
        parts[BundlePart.CSS] = style.group(1)
    script = INLINE_SCRIPT_TAG.search(markup)
    if script:
        parts[BundlePart.JS] = script.group(1)
    return ExtractionAttempt("whole_document", parts)


def _section_header(line: str) -> BundlePart | None:
    stripped = line.strip()
    if not stripped or len(stripped) > HEADER_MAX_LENGTH:
        return None
    if any(ch in CODE_CHARACTERS for ch in stripped):
        return None
    for part, pattern in HEADER_KEYWORDS:
        if pattern.search(stripped):
            return part
    return None


def extract_line_sections(text: str) -> ExtractionAttempt:
    parts: dict[BundlePart, str] = {}
    current: BundlePart | None = None
    buffer: list[str] = []

    def flush() -> None:
        content = "\n".join(buffer).strip()
        if current is not None and content and current not in parts:
            parts[current] = content

    for line in text.splitlines():
        header = _section_header(line)
        if header is None:
            buffer.append(line)
            continue
        flush()
        current = header
        buffer = []
    flush()
    return ExtractionAttempt("line_sections", parts)


def normalize_part(content: str) -> str:
    content = LEADING_FENCE.sub("", content, count=1)
    content = TRAILING_FENCE.sub("", content, count=1)
    return content.strip()


Strategy = Callable[[str], ExtractionAttempt]

STRATEGIES: tuple[Strategy, ...] = (
    extract_section_markers,
    extract_tagged_blocks,
    extract_whole_document,
    extract_line_sections,
)


def parse_generated_code(text: str) -> GeneratedBundle:
    contents: dict[BundlePart, str] = {}
    sources: dict[BundlePart, str] = {}

    for strategy in STRATEGIES:
        if len(contents) == len(BundlePart):
            break
        if strategy is extract_line_sections and BundlePart.HTML in contents:
            continue
        attempt = strategy(text or "")
        for part, raw in attempt.parts.items():
            if part in contents:
                continue
            content = normalize_part(raw)
            if content:
                contents[part] = content
                sources[part] = attempt.strategy

    html = contents.get(BundlePart.HTML, "")
    if len(html) < MIN_MARKUP_LENGTH:
        logger.warning("[bundle] Markup missing or too short (%d chars)", len(html))
        raise BundleIncomplete("Failed to extract valid HTML from generated code")

    for part in (BundlePart.CSS, BundlePart.JS):
        if part not in contents:
            logger.info("[bundle] No %s recovered, using placeholder", part.value)
    logger.debug("[bundle] Parts recovered by: %s", {part.value: name for part, name in sources.items()})

    return GeneratedBundle.from_contents(
        html=html,
        css=contents.get(BundlePart.CSS, DEFAULT_STYLESHEET),
        js=contents.get(BundlePart.JS, DEFAULT_SCRIPT),
        strategies=sources,
    )


def reject_template_leak(bundle: GeneratedBundle) -> GeneratedBundle:
    """Raise if the markup is the built-in placeholder site instead of real output."""
    if all(signature in bundle.code for signature in TEMPLATE_SIGNATURES):
        raise TemplateLeakError("Received generic template instead of generated code")
    return bundle
