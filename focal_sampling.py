from __future__ import annotations

from typing import Optional

import numpy as np


class SampleSizeError(ValueError):
    """More focal voxels requested than the candidate mask holds."""


def sample_focal_voxels(candidates: np.ndarray,
                        npixel: int,
                        rng: np.random.Generator,
                        image: Optional[str] = None) -> np.ndarray:
    """Draw npixel voxel coordinates uniformly without replacement.

    candidates: 3-D boolean/indicator array; nonzero voxels are eligible.
    Returns an (npixel, 3) int64 array of [i, j, k] coordinates.
    """
    flat = np.flatnonzero(candidates)
    if npixel > flat.size:
        where = f" in image {image!r}" if image is not None else ""
        raise SampleSizeError(
            f"npixel={npixel} exceeds the {flat.size} candidate voxels{where}"
        )
    pick = rng.choice(flat.size, size=npixel, replace=False)
    coords = np.unravel_index(flat[pick], candidates.shape)
    return np.stack(coords, axis=1).astype(np.int64, copy=False)


__all__ = ["SampleSizeError", "sample_focal_voxels"]
