"""Turn Gemini's free-text manual analysis into validated assembly steps.

The model is asked for strict JSON but may wrap it in prose or code fences,
so the first ``{`` .. last ``}`` span is parsed. Anything unparsable degrades
to an empty result instead of raising.

Lossy by contract: steps without a title are dropped, logged at debug level only.
"""

from __future__ import annotations

import json
import re
from typing import Any

import structlog

from assemblychat.models.contracts import AssemblyPart, AssemblyStep, ExtractionResult

logger = structlog.get_logger()

COLOR_PALETTE: tuple[str, ...] = (
    "#f97316",
    "#0ea5e9",
    "#8b5cf6",
    "#22c55e",
    "#ef4444",
    "#14b8a6",
    "#eab308",
    "#ec4899",
    "#6366f1",
    "#10b981",
)

DEFAULT_STEP_DESCRIPTION = "Follow the manual's instructions to complete this step of the assembly."

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_HEX_COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")


class ColorAssigner:
    """Part identity -> color map for a single extraction call.

    The first occurrence of an identity fixes its color: the model-supplied
    color when it is a valid #RRGGBB value, otherwise the palette entry at the
    cursor. The cursor advances once per new identity and wraps after 10.
    """

    def __init__(self, palette: tuple[str, ...] = COLOR_PALETTE) -> None:
        self._palette = palette
        self._colors: dict[str, str] = {}
        self._cursor = 0

    def color_for(self, identity: str, explicit: Any = None) -> str:
        if identity in self._colors:
            return self._colors[identity]
        if isinstance(explicit, str) and _HEX_COLOR_RE.match(explicit.strip()):
            color = explicit.strip()
        else:
            color = self._palette[self._cursor % len(self._palette)]
        self._cursor += 1
        self._colors[identity] = color
        return color

    @property
    def assignments(self) -> dict[str, str]:
        return dict(self._colors)


def extract_json(text: str) -> dict[str, Any] | None:
    """Parse the greedy first-``{``-to-last-``}`` span of ``text``."""
    if not text:
        return None
    match = _JSON_OBJECT_RE.search(text)
    if match is None:
        return None
    try:
        parsed = json.loads(match.group(0))
    except (ValueError, RecursionError) as exc:
        logger.warning("extraction_json_invalid", error=str(exc), text_len=len(text))
        return None
    if not isinstance(parsed, dict):
        logger.warning("extraction_json_not_object", json_type=type(parsed).__name__)
        return None
    return parsed


def _clean(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _part_identity(name: str, step_position: int, part_position: int) -> str:
    if name:
        return name.lower()
    return f"part-{step_position}-{part_position}"


def _normalize_parts(
    raw_parts: Any,
    step_position: int,
    colors: ColorAssigner,
) -> list[AssemblyPart]:
    if not isinstance(raw_parts, list):
        return []
    parts: list[AssemblyPart] = []
    for part_position, raw in enumerate(raw_parts):
        if not isinstance(raw, dict):
            continue
        name = _clean(raw.get("name"))
        identity = _part_identity(name, step_position, part_position)
        parts.append(
            AssemblyPart(
                name=name or f"Part {step_position + 1}-{part_position + 1}",
                description=_clean(raw.get("description")) or None,
                color=colors.color_for(identity, raw.get("color")),
            )
        )
    return parts


def _synthesize_description(raw_step: dict[str, Any]) -> str:
    pieces = [_clean(raw_step.get(key)) for key in ("summary", "description", "instructions")]
    return " ".join(p for p in pieces if p) or DEFAULT_STEP_DESCRIPTION


def normalize_extraction(raw: dict[str, Any] | None) -> ExtractionResult:
    """Validate, index and color a parsed extraction payload."""
    if not raw or not isinstance(raw.get("steps"), list):
        return ExtractionResult()

    titled = [s for s in raw["steps"] if isinstance(s, dict) and _clean(s.get("title"))]
    dropped = len(raw["steps"]) - len(titled)
    if dropped:
        logger.debug("extraction_steps_dropped", dropped=dropped)

    colors = ColorAssigner()
    steps = [
        AssemblyStep(
            step_index=position + 1,
            title=_clean(raw_step["title"]),
            description=_synthesize_description(raw_step),
            parts=_normalize_parts(raw_step.get("parts"), position, colors),
        )
        for position, raw_step in enumerate(titled)
    ]

    summary = _clean(raw.get("summary"))
    if not summary and steps:
        summary = f"{len(steps)} steps detected"
    return ExtractionResult(summary=summary, steps=steps)


def normalize(text: str) -> ExtractionResult:
    """Parse and normalize raw model output; never raises."""
    return normalize_extraction(extract_json(text))
