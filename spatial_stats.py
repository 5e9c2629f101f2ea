"""
spatial_stats.py

Per-image, distance-binned association statistics between channel masks.

Co-aggregation (CA): focal voxels are drawn from the union of two channels.
For each distance bin the fraction of window voxels carrying the *other*
channel (both channels when the focal voxel carries both) is normalized by
2 * d1 * d2 / d12. CA = 1 means no association beyond chance.

Cross-ratio (CR): focal voxels are drawn from the focal channel only. Per bin,
target-1 presence over target-2 presence is normalized by d1 / d2.

Windows are clamped at the array boundary, so bins near an edge collect fewer
voxels. With edge="exclude" focal voxels are restricted to positions whose
full window fits in the array.
"""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np
from numba import njit

from focal_sampling import sample_focal_voxels
from neighborhood import ConfigurationError, DistanceTemplate, interior_mask, window_bounds

EDGE_MODES = ("clamp", "exclude")


@njit(cache=True)
def _coagg_counts(ch1, ch2, focal, lo, hi, bin_index, radius, nbins):
    """Sum per-bin hits and totals over all focal voxels."""
    hits = np.zeros(nbins, dtype=np.int64)
    totals = np.zeros(nbins, dtype=np.int64)
    rx, ry, rz = radius[0], radius[1], radius[2]

    for n in range(focal.shape[0]):
        px, py, pz = focal[n, 0], focal[n, 1], focal[n, 2]
        in1 = ch1[px, py, pz] != 0
        in2 = ch2[px, py, pz] != 0
        for i in range(lo[n, 0], hi[n, 0] + 1):
            bi = i - px + rx
            for j in range(lo[n, 1], hi[n, 1] + 1):
                bj = j - py + ry
                for k in range(lo[n, 2], hi[n, 2] + 1):
                    b = bin_index[bi, bj, k - pz + rz]
                    if b < 0:
                        continue
                    totals[b] += 1
                    if in1 and not in2:
                        hits[b] += ch2[i, j, k]
                    elif in2 and not in1:
                        hits[b] += ch1[i, j, k]
                    elif in1 and in2:
                        hits[b] += ch1[i, j, k]
                        hits[b] += ch2[i, j, k]
    return hits, totals


@njit(cache=True)
def _cross_counts(t1, t2, focal, lo, hi, bin_index, radius, nbins):
    """Sum per-bin target-1 and target-2 presence over all focal voxels."""
    hits1 = np.zeros(nbins, dtype=np.int64)
    hits2 = np.zeros(nbins, dtype=np.int64)
    rx, ry, rz = radius[0], radius[1], radius[2]

    for n in range(focal.shape[0]):
        px, py, pz = focal[n, 0], focal[n, 1], focal[n, 2]
        for i in range(lo[n, 0], hi[n, 0] + 1):
            bi = i - px + rx
            for j in range(lo[n, 1], hi[n, 1] + 1):
                bj = j - py + ry
                for k in range(lo[n, 2], hi[n, 2] + 1):
                    b = bin_index[bi, bj, k - pz + rz]
                    if b < 0:
                        continue
                    hits1[b] += t1[i, j, k]
                    hits2[b] += t2[i, j, k]
    return hits1, hits2


def _kernel_args(shape, focal: np.ndarray, template: DistanceTemplate):
    focal = np.ascontiguousarray(focal, dtype=np.int64).reshape(-1, 3)
    lo, hi = window_bounds(shape, focal, template.radius)
    radius = np.asarray(template.radius, dtype=np.int64)
    return focal, lo, hi, template.bin_index, radius, template.nbins


def _as_kernel_mask(mask: np.ndarray) -> np.ndarray:
    # kernels add mask values into hit counts, so values must be 0 or 1
    return np.ascontiguousarray(mask != 0, dtype=np.uint8)


def _check_shapes(image: Optional[str], *masks: np.ndarray) -> Tuple[int, int, int]:
    shape = masks[0].shape
    for m in masks[1:]:
        if m.shape != shape:
            where = f" for image {image!r}" if image is not None else ""
            raise ConfigurationError(f"channel masks differ in shape{where}: {shape} vs {m.shape}")
    return shape


def density(mask: np.ndarray) -> float:
    """Fraction of voxels set."""
    return float(np.count_nonzero(mask)) / float(mask.size)


def coaggregation_counts(ch1: np.ndarray, ch2: np.ndarray,
                         template: DistanceTemplate,
                         focal: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Per-bin (hits, totals) summed over the given focal voxels.

    totals counts every in-bounds window voxel of the bin regardless of label.
    hits counts channel 2 around channel-1-only voxels, channel 1 around
    channel-2-only voxels, and both channels around voxels carrying both.
    """
    _check_shapes(None, ch1, ch2)
    ch1, ch2 = _as_kernel_mask(ch1), _as_kernel_mask(ch2)
    return _coagg_counts(ch1, ch2, *_kernel_args(ch1.shape, focal, template))


def cross_counts(t1: np.ndarray, t2: np.ndarray,
                 template: DistanceTemplate,
                 focal: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Per-bin (hits1, hits2) of the two target channels around focal voxels."""
    _check_shapes(None, t1, t2)
    t1, t2 = _as_kernel_mask(t1), _as_kernel_mask(t2)
    return _cross_counts(t1, t2, *_kernel_args(t1.shape, focal, template))


def coaggregation_index(hits: np.ndarray, totals: np.ndarray,
                        d1: float, d2: float, d12: float) -> np.ndarray:
    """CA = (hits / totals) / (2 * d1 * d2 / d12); empty bins give NaN."""
    with np.errstate(divide="ignore", invalid="ignore"):
        prop = hits.astype(np.float64) / totals.astype(np.float64)
        expected = 2.0 * (d1 * d2 / d12) if d12 > 0 else np.nan
        return prop / expected


def cross_ratio_index(hits1: np.ndarray, hits2: np.ndarray, d1: float, d2: float) -> np.ndarray:
    """CR = (hits1 / hits2) / (d1 / d2); bins without target-2 hits give NaN."""
    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = hits1.astype(np.float64) / hits2.astype(np.float64)
        ratio[hits2 == 0] = np.nan
        baseline = d1 / d2 if d2 > 0 else np.nan
        return ratio / baseline


def _candidates(mask: np.ndarray, template: DistanceTemplate, edge: str) -> np.ndarray:
    if edge not in EDGE_MODES:
        raise ConfigurationError(f"edge must be one of {EDGE_MODES}, got {edge!r}")
    if edge == "exclude":
        return mask & interior_mask(mask.shape, template.radius)
    return mask


def coaggregation_profile(ch1: np.ndarray, ch2: np.ndarray,
                          template: DistanceTemplate,
                          npixel: int,
                          rng: np.random.Generator,
                          edge: str = "clamp",
                          image: Optional[str] = None) -> np.ndarray:
    """CA per distance bin for one image and one random draw of focal voxels."""
    _check_shapes(image, ch1, ch2)
    union = (ch1 != 0) | (ch2 != 0)

    d1 = density(ch1)
    d2 = density(ch2)
    d12 = density(union)

    focal = sample_focal_voxels(_candidates(union, template, edge), npixel, rng, image=image)
    hits, totals = coaggregation_counts(ch1, ch2, template, focal)
    return coaggregation_index(hits, totals, d1, d2, d12)


def cross_ratio_profile(focal_mask: np.ndarray, t1: np.ndarray, t2: np.ndarray,
                        template: DistanceTemplate,
                        npixel: int,
                        rng: np.random.Generator,
                        edge: str = "clamp",
                        image: Optional[str] = None) -> np.ndarray:
    """CR per distance bin for one image and one random draw of focal voxels."""
    _check_shapes(image, focal_mask, t1, t2)
    d1 = density(t1)
    d2 = density(t2)

    focal = sample_focal_voxels(_candidates(focal_mask != 0, template, edge), npixel, rng, image=image)
    hits1, hits2 = cross_counts(t1, t2, template, focal)
    return cross_ratio_index(hits1, hits2, d1, d2)


__all__ = [
    "EDGE_MODES",
    "coaggregation_counts",
    "coaggregation_index",
    "coaggregation_profile",
    "cross_counts",
    "cross_ratio_index",
    "cross_ratio_profile",
    "density",
]
