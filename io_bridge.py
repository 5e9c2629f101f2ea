"""
io_bridge.py

Thin I/O wrapper for per-channel voxel mask files.

- One file per image per channel, e.g. ``T0_mouse3_C1.npy`` and
  ``T0_mouse3_C2.npy``.
- The image identifier is the file basename with the channel token and the
  extension removed (``T0_mouse3_``), so channels of one image are matched by
  name, never by list position.
- Arrays are returned shaped [ni, nj, nk] with i->x, j->y, k->z, binarized.

Primary API
-----------

    from io_bridge import find_channel_files, load_mask

    images = find_channel_files("./arrays", ["C1", "C2"])
    # {"T0_mouse3_": {"C1": ".../T0_mouse3_C1.npy", "C2": ".../T0_mouse3_C2.npy"}, ...}
    ch1 = load_mask(images["T0_mouse3_"]["C1"])
"""

from __future__ import annotations

import glob
import os
from typing import Dict, Iterable, Sequence

import numpy as np

from neighborhood import ConfigurationError

MASK_EXTENSIONS = (".npy", ".npz")


def image_id(path: str, channel: str) -> str:
    base = os.path.basename(path)
    for ext in MASK_EXTENSIONS:
        if base.endswith(ext):
            base = base[: -len(ext)]
            break
    return base.replace(channel, "")


def group_channel_files(paths: Iterable[str], channels: Sequence[str]) -> Dict[str, Dict[str, str]]:
    """Group mask files by image identifier.

    A file belongs to the longest channel token its basename contains, so
    ``img_C10.npy`` is a C10 file even when C1 is also a channel. A channel
    may be listed more than once (a focal channel that is also a target).
    Every image must have exactly one file for every channel.
    """
    unique = list(dict.fromkeys(channels))
    by_length = sorted(unique, key=len, reverse=True)
    groups: Dict[str, Dict[str, str]] = {}
    for p in sorted(paths):
        base = os.path.basename(p)
        ch = next((c for c in by_length if c in base), None)
        if ch is None:
            continue
        img = image_id(p, ch)
        entry = groups.setdefault(img, {})
        if ch in entry:
            raise ConfigurationError(
                f"image {img!r} has more than one file for channel {ch!r}: {entry[ch]}, {p}"
            )
        entry[ch] = p

    incomplete = {img: sorted(set(unique) - set(found)) for img, found in groups.items()
                  if set(found) != set(unique)}
    if incomplete:
        detail = ", ".join(f"{img} (missing {miss})" for img, miss in sorted(incomplete.items()))
        raise ConfigurationError(f"images without all channels: {detail}")
    return {img: {ch: groups[img][ch] for ch in unique} for img in sorted(groups)}


def find_channel_files(directory: str, channels: Sequence[str], pattern: str = "*.npy") -> Dict[str, Dict[str, str]]:
    paths = glob.glob(os.path.join(directory, pattern))
    if len(paths) == 0:
        raise FileNotFoundError(f"No files matching {pattern} in {directory}")
    return group_channel_files(paths, channels)


def load_mask(path: str) -> np.ndarray:
    """Read a 3-D mask from .npy, or the first array of an .npz, as uint8 {0,1}."""
    if path.endswith(".npz"):
        with np.load(path) as data:
            arr = data[data.files[0]]
    else:
        arr = np.load(path)
    if arr.ndim != 3:
        raise ValueError(f"{path}: expected a 3-D array, got shape {arr.shape}")
    return np.ascontiguousarray(arr != 0, dtype=np.uint8)


def save_mask(path: str, mask: np.ndarray) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    np.save(path, np.asarray(mask != 0, dtype=np.uint8))


__all__ = ["find_channel_files", "group_channel_files", "image_id", "load_mask", "save_mask"]
