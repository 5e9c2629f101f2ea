"""
neighborhood.py

Voxel neighborhoods around a focal voxel, in physical units.

- Arrays are indexed [i, j, k] with i->x, j->y, k->z.
- Offsets (dx, dy, dz) are integer voxel steps; distances are physical
  (pwidth in x and y, zstep in z).
- The distance template is built once per run and only re-sliced when a
  window is clamped at the array boundary.

Primary API
-----------

    from neighborhood import DistanceTemplate, extract_window, bin_window

    tpl = DistanceTemplate.build(size=2.0, pwidth=1.0, zstep=1.0, dstep=1.0)
    win = extract_window((10, 10, 10), (5, 5, 5), tpl.radius)
    positions = bin_window(win, tpl)   # one index array per distance bin
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np


class ConfigurationError(ValueError):
    """Run parameters that cannot produce a valid analysis."""


Radius = Tuple[int, int, int]


def _axis_steps(size: float, step: float, name: str) -> int:
    if step <= 0:
        raise ConfigurationError(f"{name} must be > 0, got {step}")
    q = size / step
    n = int(round(q))
    if not math.isclose(q, n, rel_tol=1e-9, abs_tol=1e-9):
        raise ConfigurationError(f"size not a multiple of {name} (size={size}, {name}={step})")
    return n


def validate_radius(size: float, pwidth: float, zstep: float) -> Radius:
    """Return the neighborhood radius in voxels (rx, ry, rz).

    size must be an integer multiple of both pwidth and zstep, up to
    floating-point round-off (0.9 / 0.3 is accepted).
    """
    if size <= 0:
        raise ConfigurationError(f"size must be > 0, got {size}")
    rxy = _axis_steps(size, pwidth, "pwidth")
    rz = _axis_steps(size, zstep, "zstep")
    return rxy, rxy, rz


def distance_bins(size: float, dstep: float) -> np.ndarray:
    """Bin centers 0, dstep, 2*dstep, ... up to size (inclusive)."""
    if dstep <= 0:
        raise ConfigurationError(f"dstep must be > 0, got {dstep}")
    n = int(math.floor(size / dstep + 1e-9))
    return np.arange(n + 1, dtype=np.float64) * float(dstep)


def assign_bins(distances: np.ndarray, bins: np.ndarray, dstep: float) -> np.ndarray:
    """Bin index per distance, -1 where no bin accepts it.

    Bin b accepts bins[b] - dstep/2 < d <= bins[b] + dstep/2.
    """
    half = dstep / 2.0
    idx = np.full(distances.shape, -1, dtype=np.int64)
    for b, center in enumerate(bins):
        sel = (distances > center - half) & (distances <= center + half)
        idx[sel] = b
    return idx


@dataclass(frozen=True, eq=False)
class DistanceTemplate:
    """Physical distance and bin index of every offset in the neighborhood box.

    distances[dx + rx, dy + ry, dz + rz] is the distance of offset (dx, dy, dz).
    bin_index has the same layout and holds -1 beyond the last bin.
    """

    radius: Radius
    spacing: Tuple[float, float, float]
    dstep: float
    bins: np.ndarray
    distances: np.ndarray
    bin_index: np.ndarray

    @classmethod
    def build(cls, size: float, pwidth: float, zstep: float, dstep: float = 1.0) -> "DistanceTemplate":
        rx, ry, rz = validate_radius(size, pwidth, zstep)
        bins = distance_bins(size, dstep)

        x = np.arange(-rx, rx + 1, dtype=np.float64) * pwidth
        y = np.arange(-ry, ry + 1, dtype=np.float64) * pwidth
        z = np.arange(-rz, rz + 1, dtype=np.float64) * zstep
        X, Y, Z = np.meshgrid(x, y, z, indexing="ij")
        dist = np.sqrt(X * X + Y * Y + Z * Z)
        bidx = assign_bins(dist, bins, dstep)

        for arr in (bins, dist, bidx):
            arr.setflags(write=False)
        return cls(radius=(rx, ry, rz),
                   spacing=(float(pwidth), float(pwidth), float(zstep)),
                   dstep=float(dstep),
                   bins=bins,
                   distances=dist,
                   bin_index=bidx)

    @property
    def nbins(self) -> int:
        return int(self.bins.size)

    def _template_index(self, offsets: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        off = np.asarray(offsets, dtype=np.int64).reshape(-1, 3)
        r = np.asarray(self.radius, dtype=np.int64)
        if np.any(np.abs(off) > r):
            bad = off[np.any(np.abs(off) > r, axis=1)][0]
            raise KeyError(f"offset {tuple(int(v) for v in bad)} outside template radius {self.radius}")
        idx = off + r
        return idx[:, 0], idx[:, 1], idx[:, 2]

    def distance(self, dx: int, dy: int, dz: int) -> float:
        i, j, k = self._template_index(np.array([dx, dy, dz]))
        return float(self.distances[i[0], j[0], k[0]])

    def distances_of(self, offsets: np.ndarray) -> np.ndarray:
        return self.distances[self._template_index(offsets)]

    def window_slices(self, window: "Window") -> Tuple[slice, slice, slice]:
        """Template sub-box covering a (possibly clamped) window."""
        r = np.asarray(self.radius, dtype=np.int64)
        start = window.lo - window.focal + r
        stop = window.hi - window.focal + r + 1
        if np.any(start < 0) or np.any(stop > 2 * r + 1):
            raise KeyError(f"window exceeds template radius {self.radius}")
        return tuple(slice(int(a), int(b)) for a, b in zip(start, stop))

    def window_bins(self, window: "Window") -> np.ndarray:
        """Bin index of each window position, in window address order."""
        return self.bin_index[self.window_slices(window)].ravel()


def window_bounds(shape: Sequence[int], focal: np.ndarray, radius: Sequence[int]) -> Tuple[np.ndarray, np.ndarray]:
    """Clamped inclusive window bounds for each focal voxel.

    focal is (n, 3); returns (lo, hi), both (n, 3) int64 with
    0 <= lo <= hi <= dim - 1 on every axis.
    """
    p = np.asarray(focal, dtype=np.int64).reshape(-1, 3)
    r = np.asarray(radius, dtype=np.int64)
    dims = np.asarray(shape, dtype=np.int64)
    lo = np.maximum(p - r, 0)
    hi = np.minimum(p + r, dims - 1)
    return lo, hi


def interior_mask(shape: Sequence[int], radius: Sequence[int]) -> np.ndarray:
    """True where the full, unclamped window fits inside the array."""
    ok = np.zeros(tuple(shape), dtype=bool)
    rx, ry, rz = (int(v) for v in radius)
    ni, nj, nk = shape
    if ni > 2 * rx and nj > 2 * ry and nk > 2 * rz:
        ok[rx:ni - rx, ry:nj - ry, rz:nk - rz] = True
    return ok


@dataclass(frozen=True, eq=False)
class Window:
    focal: np.ndarray      # (3,) focal voxel
    lo: np.ndarray         # (3,) inclusive lower bound after clamping
    hi: np.ndarray         # (3,) inclusive upper bound after clamping
    addresses: np.ndarray  # (m,) flat indices into the backing array (C order)
    offsets: np.ndarray    # (m, 3) offsets relative to focal

    @property
    def shape(self) -> Tuple[int, int, int]:
        return tuple(int(v) for v in (self.hi - self.lo + 1))


def extract_window(shape: Sequence[int], focal: Sequence[int], radius: Sequence[int]) -> Window:
    p = np.asarray(focal, dtype=np.int64).reshape(3)
    lo, hi = window_bounds(shape, p[None, :], radius)
    lo, hi = lo[0], hi[0]
    axes = [np.arange(lo[a], hi[a] + 1, dtype=np.int64) for a in range(3)]
    I, J, K = np.meshgrid(*axes, indexing="ij")
    coords = np.stack([I.ravel(), J.ravel(), K.ravel()], axis=1)
    addresses = np.ravel_multi_index((coords[:, 0], coords[:, 1], coords[:, 2]), tuple(shape))
    return Window(focal=p, lo=lo, hi=hi, addresses=addresses, offsets=coords - p)


def bin_window(window: Window, template: DistanceTemplate) -> List[np.ndarray]:
    """Window-local positions falling in each distance bin.

    Every offset must exist in the template; offsets outside it raise KeyError.
    """
    d = template.distances_of(window.offsets)
    half = template.dstep / 2.0
    return [np.flatnonzero((d > c - half) & (d <= c + half)) for c in template.bins]


__all__ = [
    "ConfigurationError",
    "DistanceTemplate",
    "Window",
    "assign_bins",
    "bin_window",
    "distance_bins",
    "extract_window",
    "interior_mask",
    "validate_radius",
    "window_bounds",
]
