# -*- coding: utf-8 -*-
"""
Color-histogram fingerprints for frame similarity.

- ``compute_histogram`` builds a joint 3-channel histogram with ``bins`` bins per
  channel (``floor(v * bins / 256)``), normalised to sum to 1.0 so exposure
  differences between frames of different sizes don't distort comparison.
- ``similarity`` is the Pearson correlation of two flattened histograms, the
  same measure as OpenCV's ``HISTCMP_CORREL``.
"""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

DEFAULT_BINS = 32

_DEGENERATE_EPS = 1e-12


@dataclass(frozen=True)
class Histogram:
    bins: int
    values: np.ndarray    # flat float64, length bins**3, sums to 1.0
    total_pixels: int


def compute_histogram(pixels: np.ndarray, bins: int = DEFAULT_BINS) -> Histogram:
    """Return the normalised ``bins**3`` joint color histogram of *pixels*."""

    if pixels.ndim != 3 or pixels.shape[2] != 3:
        raise ValueError(f"expected an HxWx3 image, got shape {pixels.shape}")
    if bins < 1 or bins > 256:
        raise ValueError(f"bins must be in [1, 256], got {bins}")
    img = np.ascontiguousarray(pixels, dtype=np.uint8)
    hist = cv2.calcHist([img], [0, 1, 2], None, [bins, bins, bins], [0, 256, 0, 256, 0, 256])
    values = hist.astype(np.float64).ravel()
    total = int(img.shape[0] * img.shape[1])
    if total > 0:
        values /= float(total)
    values.setflags(write=False)
    return Histogram(bins=bins, values=values, total_pixels=total)


def similarity(h1: Histogram, h2: Histogram) -> float:
    """Pearson correlation in [-1, 1]; 1.0 means identical color distributions."""

    if h1.bins != h2.bins:
        raise ValueError(f"histogram bin counts differ: {h1.bins} vs {h2.bins}")
    if h1 is h2 or np.array_equal(h1.values, h2.values):
        return 1.0
    a = h1.values - h1.values.mean()
    b = h2.values - h2.values.mean()
    denom1 = float(np.dot(a, a))
    denom2 = float(np.dot(b, b))
    if denom1 < _DEGENERATE_EPS or denom2 < _DEGENERATE_EPS:
        # A flat histogram has no variance to correlate against.
        return 0.0
    corr = float(np.dot(a, b)) / float(np.sqrt(denom1 * denom2))
    return float(max(-1.0, min(1.0, corr)))


__all__ = ["DEFAULT_BINS", "Histogram", "compute_histogram", "similarity"]
