from __future__ import annotations

import os
import sys

import numpy as np
import pandas as pd
import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from coagg3d import co_agg, cross_ratio
from focal_sampling import SampleSizeError
from mask_prep import InvalidKernelError
from neighborhood import ConfigurationError
from trial_runner import RunConfig, run_trials


def _random_images(n=2, shape=(14, 14, 8), seed=0, channels=("C1", "C2"), densities=(0.2, 0.3)):
    rng = np.random.default_rng(seed)
    return {
        f"T{i}_img{i}": {ch: (rng.random(shape) < p).astype(np.uint8) for ch, p in zip(channels, densities)}
        for i in range(n)
    }


def test_co_agg_schema_and_trial_tags():
    images = _random_images()
    out = co_agg(images, ["C1", "C2"], size=2, npixel=30, R=3, pwidth=1, zstep=1, seed=0, verbose=False)
    assert list(out.columns) == ["Img", "Distance", "CA", "Pair", "R"]
    assert len(out) == 3 * 2 * 3
    assert out["R"].tolist() == [1] * 6 + [2] * 6 + [3] * 6
    assert out["Img"].tolist()[:6] == ["T0_img0"] * 3 + ["T1_img1"] * 3
    assert out["Distance"].tolist()[:3] == [0.0, 1.0, 2.0]
    assert (out["Pair"] == "C1 + C2").all()
    assert out["CA"].dtype == np.float64


def test_trials_are_independent_draws():
    images = _random_images(n=1)
    out = co_agg(images, ["C1", "C2"], size=2, npixel=20, R=2, pwidth=1, zstep=1, seed=3, verbose=False)
    r1 = out.loc[out["R"] == 1, "CA"].to_numpy()
    r2 = out.loc[out["R"] == 2, "CA"].to_numpy()
    assert not np.array_equal(r1, r2)


def test_same_seed_is_bit_identical():
    images = _random_images()
    kw = dict(size=2, npixel=25, R=1, pwidth=1, zstep=1, verbose=False)
    a = co_agg(images, ["C1", "C2"], seed=42, **kw)
    b = co_agg(images, ["C1", "C2"], seed=np.random.default_rng(42), **kw)
    pd.testing.assert_frame_equal(a, b, check_exact=True)
    c = co_agg(images, ["C1", "C2"], seed=43, **kw)
    assert not a["CA"].equals(c["CA"])


def test_parallel_matches_sequential():
    images = _random_images(n=3)
    kw = dict(size=2, npixel=25, R=2, pwidth=1, zstep=1, seed=9, verbose=False)
    seq = co_agg(images, ["C1", "C2"], cores=1, **kw)
    par = co_agg(images, ["C1", "C2"], cores=2, **kw)
    pd.testing.assert_frame_equal(seq, par, check_exact=True)


def test_metadata_tagging():
    rng = np.random.default_rng(1)
    m = lambda: (rng.random((10, 10, 6)) < 0.3).astype(np.uint8)
    images = {"mouse_T1_a": {"C1": m(), "C2": m()},
              "mouse_T0_b": {"C1": m(), "C2": m()},
              "other": {"C1": m(), "C2": m()}}
    out = co_agg(images, ["C1", "C2"], size=1, npixel=10, R=1, pwidth=1, zstep=1,
                 naming={"Time": ["T0", "T1"], "Animal": ["mouse"]}, seed=0, verbose=False)
    assert list(out.columns) == ["Img", "Distance", "CA", "Pair", "R", "Time", "Animal"]
    assert set(out.loc[out["Img"] == "mouse_T1_a", "Time"]) == {"T1"}
    assert set(out.loc[out["Img"] == "mouse_T0_b", "Time"]) == {"T0"}
    assert out.loc[out["Img"] == "other", "Time"].isna().all()
    assert out.loc[out["Img"] == "other", "Animal"].isna().all()


def test_cross_ratio_schema_and_identity():
    rng = np.random.default_rng(2)
    target = (rng.random((12, 12, 8)) < 0.3).astype(np.uint8)
    focal = (rng.random((12, 12, 8)) < 0.2).astype(np.uint8)
    images = {"s1": {"F": focal, "A": target, "B": target.copy()}}
    out = cross_ratio(images, "F", ["A", "B"], size=2, npixel=40, R=2, pwidth=1, zstep=1, seed=0, verbose=False)
    assert list(out.columns) == ["Img", "Distance", "CR", "Targets", "Focal", "R"]
    assert (out["Targets"] == "A / B").all()
    assert (out["Focal"] == "F").all()
    assert np.allclose(out["CR"].dropna(), 1.0)


def test_layers_and_smoothing():
    ch1 = np.zeros((10, 10, 6), dtype=np.uint8)
    ch2 = np.zeros((10, 10, 6), dtype=np.uint8)
    ch1[4:7, 4:7, 0:3] = 1
    ch2[4:7, 4:7, 3:6] = 1
    images = {"img": {"C1": ch1, "C2": ch2}}
    out = co_agg(images, ["C1", "C2"], size=1, npixel=5, R=1, pwidth=1, zstep=1,
                 kern_smooth=(3, 3, 1), layers={"img": [0, 1, 2]}, seed=0, verbose=False)
    # channel 2 lives only in the dropped layers, so d2 == 0 and CA is undefined
    assert len(out) == 2
    assert out["CA"].isna().all()
    with pytest.raises(SampleSizeError):
        co_agg(images, ["C1", "C2"], size=1, npixel=100, R=1, pwidth=1, zstep=1,
               layers={"img": [0, 1, 2]}, seed=0, verbose=False)


def test_sample_size_error_aborts_run():
    images = _random_images(n=2)
    images["tiny"] = {"C1": np.zeros((14, 14, 8), dtype=np.uint8), "C2": np.zeros((14, 14, 8), dtype=np.uint8)}
    images["tiny"]["C1"][0, 0, 0] = 1
    with pytest.raises(SampleSizeError, match="tiny"):
        co_agg(images, ["C1", "C2"], size=1, npixel=5, R=2, pwidth=1, zstep=1, seed=0, verbose=False)


@pytest.mark.parametrize("kwargs", [
    dict(size=2.5, pwidth=1, zstep=1),
    dict(size=2, pwidth=1, zstep=0.75),
    dict(size=2, pwidth=1, zstep=1, npixel=0),
    dict(size=2, pwidth=1, zstep=1, R=0),
    dict(size=2, pwidth=1, zstep=1, cores=0),
    dict(size=2, pwidth=1, zstep=1, edge="pad"),
])
def test_configuration_errors(kwargs):
    images = _random_images(n=1)
    args = dict(npixel=5, R=1, seed=0, verbose=False)
    args.update(kwargs)
    with pytest.raises(ConfigurationError):
        co_agg(images, ["C1", "C2"], **args)


def test_channel_count_errors():
    images = _random_images(n=1, channels=("C1", "C2", "C3"), densities=(0.2, 0.2, 0.2))
    with pytest.raises(ConfigurationError):
        co_agg(images, ["C1", "C2", "C3"], size=1, npixel=2, pwidth=1, zstep=1, verbose=False)
    with pytest.raises(ConfigurationError):
        cross_ratio(images, "C1", ["C2"], size=1, npixel=2, pwidth=1, zstep=1, verbose=False)
    with pytest.raises(ConfigurationError):
        cross_ratio(images, ["C1", "C2"], ["C2", "C3"], size=1, npixel=2, pwidth=1, zstep=1, verbose=False)
    with pytest.raises(ConfigurationError, match="C4"):
        co_agg(images, ["C1", "C4"], size=1, npixel=2, pwidth=1, zstep=1, verbose=False)


def test_invalid_kernel_rejected_before_work():
    images = _random_images(n=1)
    with pytest.raises(InvalidKernelError):
        co_agg(images, ["C1", "C2"], size=1, npixel=2, pwidth=1, zstep=1, kern_smooth=(2, 3, 3), verbose=False)


def test_run_trials_direct_config(capsys):
    images = _random_images(n=1)
    cfg = RunConfig(mode="co_agg", channels=("C1", "C2"), size=1, npixel=5, pwidth=1, zstep=1, R=2)
    out = run_trials(images, cfg, seed=0)
    printed = capsys.readouterr().out
    assert "Starting run 1" in printed and "Starting run 2" in printed
    assert cfg.columns() == list(out.columns)


def test_focal_channel_may_also_be_a_target():
    rng = np.random.default_rng(6)
    c1 = (rng.random((12, 12, 8)) < 0.2).astype(np.uint8)
    c2 = (rng.random((12, 12, 8)) < 0.3).astype(np.uint8)
    images = {"s": {"C1": c1, "C2": c2}}
    out = cross_ratio(images, "C1", ["C1", "C2"], size=1, npixel=20, R=2, pwidth=1, zstep=1, seed=0, verbose=False)
    assert list(out.columns) == ["Img", "Distance", "CR", "Targets", "Focal", "R"]
    assert (out["Targets"] == "C1 / C2").all()
    assert len(out) == 2 * 2
    assert np.isfinite(out["CR"]).any()

    same = co_agg(images, ["C1", "C1"], size=1, npixel=20, R=1, pwidth=1, zstep=1, seed=0, verbose=False)
    assert (same["Pair"] == "C1 + C1").all()
    assert len(same) == 2
