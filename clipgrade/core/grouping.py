# -*- coding: utf-8 -*-
"""
Temporal segmentation of a frame sequence into visually consistent groups.

Each frame's color histogram is compared with its predecessor's; a correlation
below the threshold closes the current group and opens a new one.  Groups are
half-open ``[start, end)`` ranges that partition the whole sequence: no gaps,
no overlaps, ordered, never empty.

Threshold rationale: >= 0.95 over-splits on minor lighting/motion changes;
<= 0.85 merges across real cuts.  0.92 sits between the two.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Dict, Iterable, List, Optional, Sequence

from clipgrade.core.frames import Frame
from clipgrade.core.histogram import DEFAULT_BINS, Histogram, compute_histogram, similarity

LOG = logging.getLogger("clipgrade.grouping")

DEFAULT_SIMILARITY_THRESHOLD = 0.92


# ---------------------------------------------------------------------------
# Data containers
# ---------------------------------------------------------------------------

@dataclass
class FrameGroup:
    """Contiguous run of frames ``[start, end)`` enhanced as one unit."""

    index: int
    start: int
    end: int
    representative: Optional[int] = None

    @property
    def size(self) -> int:
        return self.end - self.start

    def frame_indices(self) -> range:
        return range(self.start, self.end)

    def __contains__(self, frame_index: int) -> bool:
        return self.start <= frame_index < self.end


# ---------------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------------

def _normalise_threshold(threshold: float) -> float:
    if threshold <= 0.0 or threshold > 1.0:
        LOG.warning("similarity threshold %.3f out of range; using %.2f",
                    threshold, DEFAULT_SIMILARITY_THRESHOLD)
        return DEFAULT_SIMILARITY_THRESHOLD
    return float(threshold)


def _spans_to_groups(breaks: Sequence[int], total: int) -> List[FrameGroup]:
    edges = list(breaks) + [total]
    return [
        FrameGroup(index=i, start=int(a), end=int(b))
        for i, (a, b) in enumerate(zip(edges[:-1], edges[1:]))
    ]


def group_histograms(
    histograms: Iterable[Histogram],
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> List[FrameGroup]:
    """Split consecutive histograms wherever similarity drops below *threshold*.

    *histograms* is consumed once, in order, holding two at a time.
    """

    threshold = _normalise_threshold(threshold)
    breaks = [0]
    prev: Optional[Histogram] = None
    count = 0
    for current in histograms:
        if prev is not None:
            corr = similarity(prev, current)
            if corr < threshold:
                LOG.debug("scene change at frame %d (correlation %.4f)", count, corr)
                breaks.append(count)
        prev = current
        count += 1
    if not count:
        raise ValueError("no frames to group")
    return _spans_to_groups(breaks, count)


def group_frames(
    frames: Sequence[Frame],
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    bins: int = DEFAULT_BINS,
) -> List[FrameGroup]:
    """Partition *frames* into contiguous groups by histogram similarity.

    Histograms are computed lazily, so long sequences on disk are grouped
    without loading them all.
    """

    if not frames:
        raise ValueError("no frames to group")
    LOG.info("grouping %d frames (%d bins)", len(frames), bins)
    groups = group_histograms((compute_histogram(f.pixels(), bins) for f in frames), threshold)
    LOG.info("grouped %d frames into %d groups (avg %.1f frames/group)",
             len(frames), len(groups), len(frames) / float(len(groups)))
    return groups


def spans_to_metadata(groups: Iterable[FrameGroup]) -> List[Dict[str, Optional[int]]]:
    return [
        {
            "group": g.index,
            "start": g.start,
            "end": g.end,
            "length": g.size,
            "representative": g.representative,
        }
        for g in groups
    ]


__all__ = [
    "DEFAULT_SIMILARITY_THRESHOLD",
    "FrameGroup",
    "group_frames",
    "group_histograms",
    "spans_to_metadata",
]
