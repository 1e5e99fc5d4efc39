# -*- coding: utf-8 -*-
"""
Color lookup tables derived from one edited frame and applied to its group.

``build_transform`` compares the representative frame before and after
enhancement, pixel by pixel, and records for every node of a coarse
``levels x levels x levels`` color grid the weighted mean color shift the
edit applied to input colors in the cells around that node.  Nodes no input
color reached keep a zero shift, so color regions the representative never
showed pass through untouched.

``apply_transform`` interpolates the shift trilinearly between the eight
surrounding nodes and adds it to each pixel.  Unobserved nodes take part with
their zero shift, so the grade fades out over one cell at the edge of the
observed colors instead of stopping abruptly.  The mapping depends on the
input color only, so every frame of a group grades identical colors
identically, which is what keeps the group free of flicker.

Tables are stored in the channel order of the frames (OpenCV BGR).
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import Optional

import numpy as np

from clipgrade.core.errors import GeometryMismatchError

LOG = logging.getLogger("clipgrade.transform")

DEFAULT_LEVELS = 32


@dataclass(frozen=True, eq=False)
class ColorTransform:
    """Immutable per-node color offsets; output = input + offset."""

    levels: int
    table: np.ndarray = field(repr=False)    # (levels, levels, levels, 3) float32
    observed: Optional[np.ndarray] = field(default=None, repr=False)    # (levels, levels, levels) bool

    def __post_init__(self) -> None:
        expected = (self.levels, self.levels, self.levels, 3)
        if self.table.shape != expected:
            raise ValueError(f"table shape {self.table.shape} != {expected}")
        if self.observed is None:
            object.__setattr__(self, "observed", np.any(self.table != 0, axis=-1))
        elif self.observed.shape != expected[:3]:
            raise ValueError(f"observed shape {self.observed.shape} != {expected[:3]}")
        self.table.setflags(write=False)
        self.observed.setflags(write=False)

    @property
    def observed_nodes(self) -> int:
        return int(self.observed.sum())

    @property
    def is_identity(self) -> bool:
        return not bool(np.any(self.table))

    def node_values(self) -> np.ndarray:
        """Input color (0..255) at each grid position along one axis."""
        return np.linspace(0.0, 255.0, self.levels, dtype=np.float64)

    def to_cube(self, title: str = "clipgrade group LUT") -> str:
        """Render as Adobe/Resolve ``.cube`` text (RGB, red varies fastest)."""

        nodes = self.node_values()
        lines = [f'TITLE "{title}"', f"LUT_3D_SIZE {self.levels}", ""]
        # table axes are (B, G, R); .cube iterates B slowest, R fastest.
        for b in range(self.levels):
            for g in range(self.levels):
                for r in range(self.levels):
                    ob, og, orr = self.table[b, g, r]
                    rgb = np.clip(
                        np.array([nodes[r] + orr, nodes[g] + og, nodes[b] + ob]) / 255.0, 0.0, 1.0
                    )
                    lines.append(f"{rgb[0]:.6f} {rgb[1]:.6f} {rgb[2]:.6f}")
        return "\n".join(lines) + "\n"

    def write_cube(self, path: Path, title: str = "clipgrade group LUT") -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_cube(title), encoding="utf-8")
        return path


def identity_transform(levels: int = DEFAULT_LEVELS) -> ColorTransform:
    return ColorTransform(levels=levels, table=np.zeros((levels, levels, levels, 3), dtype=np.float32))


def _cell_coordinates(colors: np.ndarray, levels: int):
    """Lower grid corner and fractional position of each color in its cell."""

    pos = colors.astype(np.float64) * (levels - 1) / 255.0
    lo = np.floor(pos).astype(np.int64)
    np.clip(lo, 0, levels - 2, out=lo)
    return lo, pos - lo


def _corners(lo: np.ndarray, frac: np.ndarray):
    """Yield ``(node_index, weight)`` for the eight corners of each cell."""

    for d0 in (0, 1):
        w0 = frac[:, 0] if d0 else 1.0 - frac[:, 0]
        for d1 in (0, 1):
            w1 = frac[:, 1] if d1 else 1.0 - frac[:, 1]
            for d2 in (0, 1):
                w2 = frac[:, 2] if d2 else 1.0 - frac[:, 2]
                yield (lo[:, 0] + d0, lo[:, 1] + d1, lo[:, 2] + d2), w0 * w1 * w2


def build_transform(
    before: np.ndarray,
    after: np.ndarray,
    levels: int = DEFAULT_LEVELS,
    sample_step: int = 1,
    mask: Optional[np.ndarray] = None,
) -> ColorTransform:
    """Derive the group's color mapping from the representative's edit.

    *before* and *after* must be pixel-aligned HxWx3 arrays; a shape
    difference raises :class:`GeometryMismatchError`.  Each sampled color
    spreads its shift over the eight nodes of its grid cell with trilinear
    weights, and every node keeps the weighted mean of what it received.
    *mask* (HxW bool) limits sampling to the pixels where it is true.
    """

    if levels < 2:
        raise ValueError(f"levels must be >= 2, got {levels}")
    if before.shape != after.shape:
        raise GeometryMismatchError(tuple(before.shape), tuple(after.shape))
    if before.ndim != 3 or before.shape[2] != 3:
        raise ValueError(f"expected HxWx3 images, got shape {before.shape}")
    if mask is not None and mask.shape != before.shape[:2]:
        raise ValueError(f"mask shape {mask.shape} != image shape {before.shape[:2]}")

    step = max(1, int(sample_step))
    src = before[::step, ::step].reshape(-1, 3).astype(np.float64)
    dst = after[::step, ::step].reshape(-1, 3).astype(np.float64)
    if mask is not None:
        keep = mask[::step, ::step].reshape(-1).astype(bool)
        src, dst = src[keep], dst[keep]

    size = levels ** 3
    weights = np.zeros(size, dtype=np.float64)
    offsets = np.zeros((size, 3), dtype=np.float64)
    delta = dst - src
    lo, frac = _cell_coordinates(src, levels)
    for (i0, i1, i2), w in _corners(lo, frac):
        flat = (i0 * levels + i1) * levels + i2
        weights += np.bincount(flat, weights=w, minlength=size)
        for c in range(3):
            offsets[:, c] += np.bincount(flat, weights=w * delta[:, c], minlength=size)
    observed = weights > 0
    offsets[observed] /= weights[observed, None]

    table = offsets.reshape(levels, levels, levels, 3).astype(np.float32)
    transform = ColorTransform(
        levels=levels, table=table, observed=observed.reshape(levels, levels, levels)
    )
    LOG.debug("built %d^3 transform from %d samples (%d nodes observed)",
              levels, src.shape[0], transform.observed_nodes)
    return transform


def apply_transform(transform: ColorTransform, pixels: np.ndarray) -> np.ndarray:
    """Map every pixel of *pixels* through *transform* (trilinear between nodes)."""

    if pixels.ndim != 3 or pixels.shape[2] != 3:
        raise ValueError(f"expected an HxWx3 image, got shape {pixels.shape}")
    if transform.is_identity:
        return np.array(pixels, dtype=np.uint8, copy=True)

    flat = pixels.reshape(-1, 3)
    lo, frac = _cell_coordinates(flat, transform.levels)
    table = transform.table
    shift = np.zeros(flat.shape, dtype=np.float64)
    for node, w in _corners(lo, frac):
        shift += w[:, None] * table[node]

    out = np.rint(flat.astype(np.float64) + shift)
    np.clip(out, 0, 255, out=out)
    return out.astype(np.uint8).reshape(pixels.shape)


__all__ = [
    "DEFAULT_LEVELS",
    "ColorTransform",
    "identity_transform",
    "build_transform",
    "apply_transform",
]
