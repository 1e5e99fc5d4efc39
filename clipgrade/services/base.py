"""Contracts for the external AI services and the critique normaliser.

The orchestrator only talks to three narrow interfaces:

* :class:`ImageEnhancer` -- whole-frame enhancement from a text instruction.
* :class:`ImageCritic` -- a quality score plus remaining issues.
* :class:`SurgicalEditor` -- a masked edit confined to a named region.

Critique payloads vary by provider and prompt, so :func:`coerce_critique` is
the single place that turns raw JSON (or text that contains JSON) into a
:class:`Critique`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import Any, Dict, List, Mapping, Protocol, Tuple, Union

import numpy as np

from clipgrade.core.errors import MalformedResponseError

LOG = logging.getLogger("clipgrade.services")

GRID_REGIONS = (
    "top-left", "top-center", "top-right",
    "center-left", "center", "center-right",
    "bottom-left", "bottom-center", "bottom-right",
)
REGIONS = GRID_REGIONS + ("background", "foreground", "global")

MAX_SCORE = 10.0

# Issues at these impact levels are reported but never acted on.
LOW_IMPACTS = ("low", "minor", "negligible")


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Issue:
    """One remaining problem reported by the critic."""

    description: str
    region: str = "global"
    surgical: bool = False
    instruction: str = ""
    impact: str = "medium"

    @property
    def edit_instruction(self) -> str:
        return self.instruction or self.description

    @property
    def actionable(self) -> bool:
        return self.impact not in LOW_IMPACTS


@dataclass(frozen=True)
class Critique:
    """Score plus remaining issues; only high/medium-impact issues drive edits."""

    score: float
    issues: List[Issue] = field(default_factory=list)

    @property
    def actionable_issues(self) -> List[Issue]:
        return [i for i in self.issues if i.actionable]

    @property
    def surgical_issues(self) -> List[Issue]:
        return [i for i in self.actionable_issues if i.surgical and i.region != "global"]

    @property
    def global_issues(self) -> List[Issue]:
        return [i for i in self.actionable_issues if not i.surgical or i.region == "global"]


# ---------------------------------------------------------------------------
# Region masks
# ---------------------------------------------------------------------------


def _grid_box(width: int, height: int, region: str) -> Tuple[int, int, int, int]:
    third_w, third_h = width // 3, height // 3
    margin = width // 20
    row_name, _, col_name = region.partition("-")
    if region == "center":
        row_name, col_name = "center", "center"
    cols = {
        "left": (0, third_w + margin),
        "center": (third_w - margin, 2 * third_w + margin),
        "right": (2 * third_w - margin, width),
    }
    rows = {
        "top": (0, third_h + margin),
        "center": (third_h - margin, 2 * third_h + margin),
        "bottom": (2 * third_h - margin, height),
    }
    x1, x2 = cols[col_name]
    y1, y2 = rows[row_name]
    return max(0, x1), max(0, y1), min(width, x2), min(height, y2)


def region_mask(width: int, height: int, region: str) -> np.ndarray:
    """Return an HxW uint8 mask, 255 where the edit is allowed."""

    mask = np.zeros((height, width), dtype=np.uint8)
    if region == "global":
        mask[:] = 255
    elif region == "background":
        edge_w, edge_h = width // 5, height // 5
        mask[:edge_h, :] = 255
        mask[height - edge_h:, :] = 255
        mask[:, :edge_w] = 255
        mask[:, width - edge_w:] = 255
    elif region == "foreground":
        mask[height // 5:4 * height // 5, width // 5:4 * width // 5] = 255
    elif region in GRID_REGIONS:
        x1, y1, x2, y2 = _grid_box(width, height, region)
        mask[y1:y2, x1:x2] = 255
    else:
        raise ValueError(f"unknown region: {region}")
    return mask


# ---------------------------------------------------------------------------
# Service interfaces
# ---------------------------------------------------------------------------


class ImageEnhancer(Protocol):
    def enhance(self, image: np.ndarray, instruction: str) -> np.ndarray:
        ...


class ImageCritic(Protocol):
    def critique(self, image: np.ndarray) -> Critique:
        ...


class SurgicalEditor(Protocol):
    def edit(self, image: np.ndarray, region: str, instruction: str) -> np.ndarray:
        ...


# ---------------------------------------------------------------------------
# Critique coercion
# ---------------------------------------------------------------------------


def strip_markdown_fences(text: str) -> str:
    """Drop a surrounding ```json ... ``` block if present."""

    text = text.strip()
    if not text.startswith("```"):
        return text
    lines = text.split("\n")
    if len(lines) < 3:
        return text
    end = len(lines) - 1
    for i in range(len(lines) - 1, 0, -1):
        if lines[i].strip() == "```":
            end = i
            break
    return "\n".join(lines[1:end])


def extract_json_object(text: str) -> Dict[str, Any]:
    """Parse the first ``{ ... }`` object found in *text*."""

    body = strip_markdown_fences(text)
    start = body.find("{")
    stop = body.rfind("}")
    if start == -1 or stop <= start:
        raise MalformedResponseError("no JSON object in critique response")
    try:
        parsed = json.loads(body[start:stop + 1])
    except json.JSONDecodeError as exc:
        raise MalformedResponseError(f"critique response is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise MalformedResponseError("critique response is not a JSON object")
    return parsed


def _normalise_region(value: Any) -> str:
    region = str(value or "global").strip().lower().replace("_", "-").replace(" ", "-")
    if region == "middle":
        region = "center"
    if region not in REGIONS:
        LOG.debug("unknown region %r treated as global", value)
        return "global"
    return region


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return bool(value)


def _coerce_issue(raw: Any) -> Issue:
    if isinstance(raw, str):
        return Issue(description=raw.strip())
    if not isinstance(raw, Mapping):
        raise MalformedResponseError(f"issue entry has unexpected type {type(raw).__name__}")
    description = str(raw.get("description") or raw.get("type") or "").strip()
    surgical = raw.get("surgical", raw.get("imagenSuitable", False))
    return Issue(
        description=description,
        region=_normalise_region(raw.get("region")),
        surgical=_coerce_bool(surgical),
        instruction=str(raw.get("instruction") or raw.get("editInstruction") or "").strip(),
        impact=str(raw.get("impact") or "medium").strip().lower(),
    )


def coerce_critique(payload: Union[str, Mapping[str, Any]]) -> Critique:
    """Normalise a critic response into a :class:`Critique`.

    Accepts either ``{"score", "issues": [{"surgical", ...}]}`` or the
    analysis shape ``{"professionalScore", "remainingImprovements":
    [{"imagenSuitable", "editInstruction", ...}], "noFurtherEditsNeeded"}``.
    Raises :class:`MalformedResponseError` when no usable score is present.
    """

    data = extract_json_object(payload) if isinstance(payload, str) else payload
    if not isinstance(data, Mapping):
        raise MalformedResponseError("critique payload is not a mapping")

    raw_score = data.get("score", data.get("professionalScore"))
    try:
        score = float(raw_score)
    except (TypeError, ValueError) as exc:
        raise MalformedResponseError(f"critique score missing or not numeric: {raw_score!r}") from exc
    if score != score:  # NaN
        raise MalformedResponseError("critique score is NaN")
    score = max(0.0, min(MAX_SCORE, score))

    raw_issues = data.get("issues", data.get("remainingImprovements")) or []
    if not isinstance(raw_issues, list):
        raise MalformedResponseError("critique issues must be a list")
    issues = [_coerce_issue(item) for item in raw_issues]
    issues = [i for i in issues if i.description or i.instruction]
    if _coerce_bool(data.get("noFurtherEditsNeeded", False)):
        issues = []
    return Critique(score=score, issues=issues)


__all__ = [
    "GRID_REGIONS",
    "REGIONS",
    "Issue",
    "Critique",
    "region_mask",
    "ImageEnhancer",
    "ImageCritic",
    "SurgicalEditor",
    "strip_markdown_fences",
    "extract_json_object",
    "coerce_critique",
]
