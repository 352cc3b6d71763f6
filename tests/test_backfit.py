"""Tests for GMD-based backfitting and the ranked assignment structure."""

from __future__ import annotations
import numpy as np
import pytest

from src.microstates.errors import DimensionMismatch
from src.microstates.io.prototypes import PrototypeSet, normalize_maps
from src.microstates.segmentation.backfit import RankedAssignment, backfit, global_map_dissimilarity


def _rms_gmd(x: np.ndarray, a: np.ndarray) -> float:
    """Direct definition: RMS difference of normalized maps, minimized over polarity."""
    xn = (x - x.mean()) / x.std()
    an = (a - a.mean()) / a.std()
    return min(np.sqrt(np.mean((xn - an) ** 2)), np.sqrt(np.mean((xn + an) ** 2)))


def test_golden_gmd_and_labels(golden):
    X, maps, ch = golden
    res = backfit(X, PrototypeSet(maps, ch))
    assert res.best().tolist() == [0, 0, 0, 1, 1, 1]
    assert res.gmd.shape == (2, 6)
    # identical (or inverted) maps have zero dissimilarity, orthogonal ones sqrt(2)
    assert res.gmd[0, 0] == pytest.approx(0.0, abs=1e-12)
    assert res.gmd[0, 1] == pytest.approx(0.0, abs=1e-12)
    assert res.gmd[1, 0] == pytest.approx(np.sqrt(2.0))
    r = 1.5 / np.sqrt(2.5)
    assert res.gmd[0, 2] == pytest.approx(np.sqrt(2.0 - 2.0 * r))
    assert res.gmd[1, 2] == pytest.approx(np.sqrt(2.0 - 2.0 * 0.5 / np.sqrt(2.5)))
    assert res.valid.all()


def test_gmd_matches_direct_rms_definition():
    rng = np.random.default_rng(1)
    X = rng.standard_normal((30, 7))
    maps = rng.standard_normal((7, 4))
    gmd = global_map_dissimilarity(normalize_maps(X, axis=1), normalize_maps(maps, axis=0))
    for k in range(4):
        for j in range(30):
            assert gmd[k, j] == pytest.approx(_rms_gmd(X[j], maps[:, k]), abs=1e-9)


def test_polarity_invariance():
    rng = np.random.default_rng(2)
    X = rng.standard_normal((50, 6))
    maps = rng.standard_normal((6, 3))
    pos = backfit(X, PrototypeSet(maps, list("abcdef")))
    neg = backfit(X, PrototypeSet(-maps, list("abcdef")))
    assert np.allclose(pos.gmd, neg.gmd, atol=1e-12)
    assert np.array_equal(pos.ranked.order, neg.ranked.order)


def test_full_ranking_is_sorted_by_gmd():
    rng = np.random.default_rng(3)
    X = rng.standard_normal((40, 5))
    res = backfit(X, PrototypeSet(rng.standard_normal((5, 4)), list("abcde")))
    order = res.ranked.order
    assert order.shape == (40, 4)
    for j in range(40):
        assert sorted(order[j].tolist()) == [0, 1, 2, 3]
        assert np.all(np.diff(res.gmd[order[j], j]) >= 0)


def test_ties_prefer_lower_label():
    gmd = np.array([[0.5, 0.2, 0.7], [0.5, 0.1, 0.7], [0.5, 0.2, 0.1]])
    ranked = RankedAssignment.from_gmd(gmd)
    assert ranked.order.tolist() == [[0, 1, 2], [1, 0, 2], [2, 0, 1]]


def test_channel_count_mismatch_is_fatal(golden):
    X, maps, ch = golden
    with pytest.raises(DimensionMismatch):
        backfit(X[:, :3], PrototypeSet(maps, ch))


def test_zero_variance_sample_is_flagged_not_raised(golden):
    X, maps, ch = golden
    X = X.copy()
    X[2] = 7.0
    res = backfit(X, PrototypeSet(maps, ch))
    assert res.valid.tolist() == [True, True, False, True, True, True]
    assert np.all(np.isnan(res.gmd[:, 2]))
    assert res.n_degenerate == 1
    assert res.best().tolist() == [0, 0, -1, 1, 1, 1]


def test_unobserved_rows_are_never_rotated():
    order = np.array([[0, 1], [1, 0], [0, 1]])
    ranked = RankedAssignment(order, valid=np.array([True, False, True]))
    assert ranked.best().tolist() == [0, -1, 0]
    ranked.rotate([0, 1, 2])
    assert ranked.order.tolist() == [[1, 0], [1, 0], [1, 0]]
    assert ranked.best().tolist() == [1, -1, 1]
    assert ranked.copy().valid.tolist() == [True, False, True]


def test_from_gmd_marks_all_nan_columns_unobserved():
    gmd = np.array([[0.1, np.nan, 1.2], [0.5, np.nan, np.nan]])
    ranked = RankedAssignment.from_gmd(gmd)
    assert ranked.valid.tolist() == [True, False, True]
    assert ranked.best().tolist() == [0, -1, 0]


def test_rotate_moves_head_to_tail():
    ranked = RankedAssignment(np.array([[0, 1, 2], [2, 0, 1], [1, 2, 0]]))
    ranked.rotate([0, 2])
    assert ranked.order.tolist() == [[1, 2, 0], [2, 0, 1], [2, 0, 1]]
    assert ranked.best().tolist() == [1, 2, 2]
    ranked.rotate([0])
    assert ranked.order[0].tolist() == [2, 0, 1]
    copy = ranked.copy()
    copy.rotate([1])
    assert ranked.order[1].tolist() == [2, 0, 1]


def test_backfit_recovers_planted_maps(synthetic_data, planted_maps):
    X, truth = synthetic_data
    res = backfit(X, PrototypeSet(planted_maps, [f"c{i}" for i in range(8)]))
    assert np.mean(res.best() == truth) > 0.85
