"""
mask_prep.py

Optional per-image preprocessing applied before any statistic is computed:
z-layer subsetting and median smoothing with an odd box kernel. Masks leave
here as C-contiguous uint8 arrays holding only 0 and 1.
"""

from __future__ import annotations

import numbers
from typing import Optional, Sequence, Tuple

import numpy as np
from scipy import ndimage

from neighborhood import ConfigurationError


class InvalidKernelError(ValueError):
    """Smoothing kernel that is not three positive odd integers."""


def validate_kernel(kernel: Sequence) -> Tuple[int, int, int]:
    if kernel is None or len(kernel) != 3:
        raise InvalidKernelError(f"kernel must have three entries, got {kernel!r}")
    out = []
    for k in kernel:
        if isinstance(k, bool) or not isinstance(k, numbers.Real):
            raise InvalidKernelError("Kernel smooth has to be odd integers in all directions")
        if not float(k).is_integer() or k <= 0 or int(k) % 2 != 1:
            raise InvalidKernelError("Kernel smooth has to be odd integers in all directions")
        out.append(int(k))
    return out[0], out[1], out[2]


def binarize(mask: np.ndarray) -> np.ndarray:
    arr = np.asarray(mask)
    if arr.ndim != 3:
        raise ValueError(f"channel masks must be 3-D, got shape {arr.shape}")
    return np.ascontiguousarray(arr != 0, dtype=np.uint8)


def subset_layers(mask: np.ndarray, layers: Sequence[int]) -> np.ndarray:
    """Keep the listed z-layers (0-based, in the given order)."""
    idx = np.asarray(layers, dtype=np.intp)
    if idx.ndim != 1 or idx.size == 0:
        raise ConfigurationError("layers must be a non-empty list of z indices")
    return mask[:, :, idx]


def smooth_mask(mask: np.ndarray, kernel: Sequence[int]) -> np.ndarray:
    """Median filter with a box kernel, then any positive value becomes 1."""
    size = validate_kernel(kernel)
    filtered = ndimage.median_filter(np.asarray(mask, dtype=np.uint8), size=size)
    return np.ascontiguousarray(filtered > 0, dtype=np.uint8)


def prepare_masks(masks: Sequence[np.ndarray],
                  layers: Optional[Sequence[int]] = None,
                  kernel: Optional[Sequence[int]] = None) -> list[np.ndarray]:
    out = []
    for m in masks:
        m = binarize(m)
        if layers is not None:
            m = subset_layers(m, layers)
        if kernel is not None:
            m = smooth_mask(m, kernel)
        out.append(np.ascontiguousarray(m, dtype=np.uint8))
    return out


__all__ = [
    "InvalidKernelError",
    "binarize",
    "prepare_masks",
    "smooth_mask",
    "subset_layers",
    "validate_kernel",
]
