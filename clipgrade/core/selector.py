"""Representative-frame selection: one frame per group goes to the AI services."""

from __future__ import annotations

import logging
from typing import List, Sequence

import cv2
import numpy as np

from clipgrade.core.frames import Frame
from clipgrade.core.grouping import FrameGroup

LOG = logging.getLogger("clipgrade.selector")

MIDPOINT = "midpoint"
SHARPEST = "sharpest"


def select_representative(group: FrameGroup) -> int:
    """Temporal midpoint of ``[start, end)``, rounded down."""
    return group.start + (group.end - group.start) // 2


def sharpness(frame_bgr: np.ndarray) -> float:
    """Variance of the Laplacian on the grey image; higher is sharper."""
    gray = cv2.cvtColor(np.ascontiguousarray(frame_bgr), cv2.COLOR_BGR2GRAY)
    return float(cv2.Laplacian(gray, cv2.CV_64F).var())


def select_sharpest(group: FrameGroup, frames: Sequence[Frame]) -> int:
    """Sharpest frame within the middle third of the group (ties keep the midpoint)."""

    mid = select_representative(group)
    if group.size < 3:
        return mid
    third = max(1, group.size // 3)
    lo = max(group.start, mid - third // 2)
    hi = min(group.end, lo + third)
    best, best_score = mid, sharpness(frames[mid].pixels())
    for idx in range(lo, hi):
        if idx == mid:
            continue
        score = sharpness(frames[idx].pixels())
        if score > best_score:
            best, best_score = idx, score
    return best


def assign_representatives(
    groups: Sequence[FrameGroup],
    frames: Sequence[Frame],
    strategy: str = MIDPOINT,
) -> List[FrameGroup]:
    for group in groups:
        if strategy == SHARPEST:
            group.representative = select_sharpest(group, frames)
        else:
            group.representative = select_representative(group)
        LOG.debug("group %d [%d, %d) -> representative %d",
                  group.index, group.start, group.end, group.representative)
    return list(groups)


__all__ = [
    "MIDPOINT",
    "SHARPEST",
    "select_representative",
    "select_sharpest",
    "sharpness",
    "assign_representatives",
]
