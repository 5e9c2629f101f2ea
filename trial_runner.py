"""
trial_runner.py

Repeated randomized trials of a per-image statistic, dispatched per image to
a worker pool owned by the run.

- One task per image; tasks share no state and each gets its own random
  stream spawned from the run generator, so a fixed seed reproduces the
  output whatever the number of workers.
- Trials run one after another and are tagged R = 1..n.
- Any failing image aborts the run; no partial table is returned.
"""

from __future__ import annotations

import multiprocessing as mp
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from functools import partial
from typing import Dict, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from io_bridge import load_mask
from mask_prep import prepare_masks, validate_kernel
from metadata_tags import Naming, annotate, metadata_columns
from neighborhood import ConfigurationError, DistanceTemplate
from spatial_stats import EDGE_MODES, coaggregation_profile, cross_ratio_profile

MaskSource = Union[np.ndarray, str, os.PathLike]
Images = Mapping[str, Mapping[str, MaskSource]]

MODES = ("co_agg", "cross_ratio")


@dataclass(frozen=True)
class RunConfig:
    """Parameters of one analysis run.

    - mode: "co_agg" or "cross_ratio"
    - channels: (ch1, ch2) for co_agg; (focal, target1, target2) for cross_ratio
    - size: maximum distance examined, physical units; multiple of pwidth and zstep
    - npixel: focal voxels sampled per image per trial
    - R: number of trials
    - dstep: distance bin step
    - pwidth, zstep: voxel spacing in x/y and z
    - cores: worker processes; 1 runs in-process
    - kern_smooth: optional odd (x, y, z) median kernel
    - edge: "clamp" truncates windows at the boundary, "exclude" samples only
      focal voxels whose full window fits
    """

    mode: str
    channels: Tuple[str, ...]
    size: float
    npixel: int
    pwidth: float
    zstep: float
    R: int = 10
    dstep: float = 1.0
    cores: int = 1
    kern_smooth: Optional[Tuple[int, int, int]] = None
    edge: str = "clamp"
    naming: Optional[Dict[str, Tuple[str, ...]]] = field(default=None, compare=False)

    @property
    def statistic(self) -> str:
        return "CA" if self.mode == "co_agg" else "CR"

    def identifier_columns(self) -> Dict[str, str]:
        if self.mode == "co_agg":
            return {"Pair": f"{self.channels[0]} + {self.channels[1]}"}
        focal, t1, t2 = self.channels
        return {"Targets": f"{t1} / {t2}", "Focal": focal}

    def columns(self) -> list[str]:
        return (["Img", "Distance", self.statistic]
                + list(self.identifier_columns())
                + ["R"]
                + metadata_columns(self.naming))

    def validate(self) -> DistanceTemplate:
        """Check everything knowable before per-image work; return the template."""
        if self.mode not in MODES:
            raise ConfigurationError(f"mode must be one of {MODES}, got {self.mode!r}")
        want = 2 if self.mode == "co_agg" else 3
        if len(self.channels) != want:
            raise ConfigurationError(f"{self.mode} needs {want} channels, got {len(self.channels)}")
        for name in ("npixel", "R", "cores"):
            v = getattr(self, name)
            if int(v) != v or v < 1:
                raise ConfigurationError(f"{name} must be a positive integer, got {v}")
        if self.edge not in EDGE_MODES:
            raise ConfigurationError(f"edge must be one of {EDGE_MODES}, got {self.edge!r}")
        if self.kern_smooth is not None:
            validate_kernel(self.kern_smooth)
        metadata_columns(self.naming)
        return DistanceTemplate.build(self.size, self.pwidth, self.zstep, self.dstep)


@dataclass(frozen=True)
class ImageTask:
    image: str
    masks: Tuple[MaskSource, ...]
    layers: Optional[Tuple[int, ...]]
    rng: np.random.Generator


def _load(src: MaskSource) -> np.ndarray:
    if isinstance(src, (str, os.PathLike)):
        return load_mask(os.fspath(src))
    return src


def run_image(task: ImageTask, config: RunConfig, template: DistanceTemplate) -> pd.DataFrame:
    """Full per-image pipeline: load, preprocess, sample, count, normalize."""
    masks = prepare_masks([_load(m) for m in task.masks], layers=task.layers, kernel=config.kern_smooth)
    if config.mode == "co_agg":
        values = coaggregation_profile(masks[0], masks[1], template, int(config.npixel), task.rng,
                                       edge=config.edge, image=task.image)
    else:
        values = cross_ratio_profile(masks[0], masks[1], masks[2], template, int(config.npixel), task.rng,
                                     edge=config.edge, image=task.image)
    return pd.DataFrame({
        "Img": [task.image] * template.nbins,
        "Distance": np.asarray(template.bins, dtype=np.float64),
        config.statistic: np.asarray(values, dtype=np.float64),
    })


@contextmanager
def worker_pool(cores: int):
    """Yield a map function; a process pool lives only inside the block."""
    if cores == 1:
        yield lambda fn, items: [fn(x) for x in items]
        return
    ctx = mp.get_context("spawn")
    with ctx.Pool(processes=cores) as pool:
        yield pool.map


def _check_images(images: Images, channels: Sequence[str]) -> list[str]:
    if len(images) == 0:
        raise ConfigurationError("no images given")
    missing = {img: [c for c in channels if c not in chans] for img, chans in images.items()}
    missing = {img: m for img, m in missing.items() if m}
    if missing:
        raise ConfigurationError(f"images without all channels: {missing}")
    return list(images.keys())


def _image_layers(layers: Optional[Mapping[str, Sequence[int]]], image: str) -> Optional[Tuple[int, ...]]:
    if layers is None or layers.get(image) is None:
        return None
    return tuple(int(z) for z in layers[image])


def run_trials(images: Images,
               config: RunConfig,
               layers: Optional[Mapping[str, Sequence[int]]] = None,
               seed=None,
               verbose: bool = True) -> pd.DataFrame:
    """Run config.R trials over all images and return one concatenated table.

    images: {image_id: {channel: array or .npy path}}
    layers: optional {image_id: [z indices to keep]}
    seed: anything numpy.random.default_rng accepts, including a Generator
    """
    template = config.validate()
    image_ids = _check_images(images, config.channels)
    if layers is not None:
        unknown = sorted(set(layers) - set(image_ids))
        if unknown:
            raise ConfigurationError(f"layers given for unknown images: {unknown}")

    rng = np.random.default_rng(seed)
    job = partial(run_image, config=config, template=template)
    trials = []
    t0 = time.time()
    with worker_pool(int(config.cores)) as pmap:
        for r in range(1, int(config.R) + 1):
            if verbose:
                print(f"Starting run {r}")
            streams = rng.spawn(len(image_ids))
            tasks = [
                ImageTask(image=img,
                          masks=tuple(images[img][c] for c in config.channels),
                          layers=_image_layers(layers, img),
                          rng=stream)
                for img, stream in zip(image_ids, streams)
            ]
            trial = pd.concat(pmap(job, tasks), ignore_index=True)
            for col, value in config.identifier_columns().items():
                trial[col] = value
            trial["R"] = r
            trials.append(trial)

    table = pd.concat(trials, ignore_index=True)
    table = annotate(table, config.naming)
    if verbose:
        print(f"{config.mode}: {len(image_ids)} images x {config.R} runs in {time.time() - t0:.2f}s")
    return table[config.columns()]


__all__ = ["ImageTask", "MODES", "RunConfig", "run_image", "run_trials", "worker_pool"]
