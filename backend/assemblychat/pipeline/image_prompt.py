"""Image-generation prompt for one assembly step.

Pure string rendering: the same step always yields byte-identical text,
which is also what the dev image cache keys on.
"""

from __future__ import annotations

from assemblychat.models.contracts import AssemblyPart, AssemblyStep

OUTLINE_COLOR = "#D1D5DB"
NO_PARTS_CLAUSE = "No specific parts supplied. Focus on the overall action."

_TEMPLATE = """\
Create a high-resolution instruction-style illustration for Step {step_index}: "{title}".
- Background must be pure white (#FFFFFF) with crisp line art.
- Highlight ONLY the listed parts using the specified HEX colours. The colours must match EXACTLY and be fully saturated.
- Any surrounding structures should be light grey outlines ({outline}) for context, without additional shading.
- Avoid black fills or gradients unless explicitly specified.

Step description:
{description}

Parts to highlight:
{parts}
"""


def _part_line(position: int, part: AssemblyPart) -> str:
    line = f"Part {position}: {part.name} — use a solid fill of EXACTLY {part.color}"
    if part.description and part.description.strip():
        line += f" ({part.description.strip()})"
    return line


def build_image_prompt(step: AssemblyStep) -> str:
    if step.parts:
        parts = "\n".join(_part_line(i, part) for i, part in enumerate(step.parts, start=1))
    else:
        parts = NO_PARTS_CLAUSE
    return _TEMPLATE.format(
        step_index=step.step_index,
        title=step.title,
        outline=OUTLINE_COLOR,
        description=step.description,
        parts=parts,
    )
