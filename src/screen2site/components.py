"""Read the component inventory from frame analysis and describe it back for code generation.

The analysis reply is meant to be a bare JSON array but often arrives wrapped
in prose or a fenced block, so the parser looks for the array first and the
fence second.
"""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Iterator, Mapping, Sequence

from screen2site.errors import ComponentParseError
from screen2site.models import ComponentPosition, ComponentType, DetectedComponent

logger = logging.getLogger(__name__)

# Only the leading frames are sent for analysis.
ANALYZED_FRAME_LIMIT = 5

JSON_ARRAY = re.compile(r"\[.*\]", re.DOTALL)
JSON_FENCE = re.compile(r"```(?:json)?\s*(\[.*?\])\s*```", re.DOTALL)

NO_REQUIREMENTS = "No specific requirements provided"


def _json_candidates(text: str) -> Iterator[str]:
    array = JSON_ARRAY.search(text)
    if array:
        yield array.group(0)
    fence = JSON_FENCE.search(text)
    if fence:
        yield fence.group(1)


def _position(value: object) -> ComponentPosition | None:
    if not isinstance(value, dict):
        return None
    try:
        return ComponentPosition(
            x=float(value["x"]),
            y=float(value["y"]),
            width=float(value["width"]),
            height=float(value["height"]),
        )
    except (KeyError, TypeError, ValueError):
        return None


def _confidence(value: object) -> float:
    try:
        confidence = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(confidence):
        return 0.0
    return min(1.0, max(0.0, confidence))


def _frame_index(index: int, analyzed_count: int, frame_count: int) -> int:
    if analyzed_count <= 0 or frame_count <= 0:
        return 0
    return min(frame_count - 1, index * frame_count // analyzed_count)


def parse_detected_components(
    text: str,
    frame_count: int,
    analyzed_count: int | None = None,
) -> list[DetectedComponent]:
    """Parse the analysis reply into components.

    Items without an ``id`` get ``comp_<n>``; unknown types become ``other``.
    Each component is assigned a frame by spreading its position in the list
    over the whole frame sequence.
    """
    if analyzed_count is None:
        analyzed_count = min(frame_count, ANALYZED_FRAME_LIMIT)

    for candidate in _json_candidates(text or ""):
        try:
            items = json.loads(candidate)
        except json.JSONDecodeError as exc:
            logger.debug("[components] Candidate is not valid JSON: %s", exc)
            continue
        if not isinstance(items, list):
            continue

        components = [
            DetectedComponent(
                id=str(item.get("id") or f"comp_{index + 1}"),
                type=ComponentType.parse(item.get("type")),
                label=str(item.get("label") or ""),
                description=str(item.get("description") or ""),
                confidence=_confidence(item.get("confidence")),
                position=_position(item.get("position")),
                frame_index=_frame_index(index, analyzed_count, frame_count),
            )
            for index, item in enumerate(items)
            if isinstance(item, dict)
        ]
        if components:
            logger.info("[components] Parsed %d component(s)", len(components))
            return components

    raise ComponentParseError("Failed to parse component detection response")


def response_component(key: str, components: Sequence[DetectedComponent]) -> DetectedComponent | None:
    """Find the component a questionnaire answer key (``q_<id>_<field>``) belongs to."""
    for component in components:
        if key.startswith(f"q_{component.id}_"):
            return component
    # Longest id first so "comp_10" is not claimed by "comp_1".
    for component in sorted(components, key=lambda c: len(c.id), reverse=True):
        if component.id and component.id in key:
            return component
    return None


def build_code_prompt(components: Sequence[DetectedComponent], responses: Mapping[str, str]) -> str:
    descriptions = []
    for idx, component in enumerate(components, start=1):
        line = f"{idx}. {component.label} ({component.type.value}): {component.description}"
        answer = next(
            (value for key, value in responses.items() if response_component(key, components) is component),
            None,
        )
        if answer:
            line = f"{line} - User specified: {answer}"
        descriptions.append(line)

    requirements = []
    for key, value in responses.items():
        component = response_component(key, components)
        requirements.append(f"- {component.label if component else 'Component'}: {value}")

    return (
        "You are a web developer generating a complete, functional website based on video frame analysis.\n\n"
        "DETECTED COMPONENTS:\n"
        f"{chr(10).join(descriptions)}\n\n"
        "USER REQUIREMENTS:\n"
        f"{chr(10).join(requirements) or NO_REQUIREMENTS}\n\n"
        "INSTRUCTIONS:\n"
        "1. Create a complete, modern, responsive website with separate HTML, CSS, and JavaScript files\n"
        "2. Include ALL detected components with the functionality specified by the user\n"
        "3. Use the user's answers to customize component behavior\n"
        "4. Make the website visually appealing and functional\n"
        "5. Use modern CSS (flexbox/grid) and vanilla JavaScript\n"
        "6. Ensure all components are interactive and work as described\n\n"
        "Return the code in this format:\n"
        "===HTML===\n"
        "[HTML code here]\n"
        "===CSS===\n"
        "[CSS code here]\n"
        "===JS===\n"
        "[JavaScript code here]\n\n"
        "Generate code that matches the detected components and user requirements exactly."
    )
