"""End-to-end tests for pipeline orchestration on synthetic recordings."""

from __future__ import annotations
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from src.microstates.data.io import Recording
from src.microstates.errors import DimensionMismatch
from src.microstates.io.prototypes import PrototypeSet, read_prototypes, write_prototypes
from src.microstates.pipeline import analyze_recording, fit_from_recordings, run_pipeline

from .conftest import CH_NAMES, _synthetic_samples


def _recordings(n: int = 2):
    recs = []
    for i in range(n):
        X, _ = _synthetic_samples(seed=10 + i)
        recs.append(Recording(data=X, ch_names=list(CH_NAMES), sfreq=250, recording_id=f"rec{i}"))
    return recs


def _cfg(out_dir: Path, **overrides):
    cfg = {
        "fit": {"ks": [3], "n_reps": 5},
        "backfit": {"min_run": 3},
        "output": {"dir": str(out_dir), "write_peaks": True, "write_sequence": True},
    }
    for key, value in overrides.items():
        cfg.setdefault(key, {}).update(value)
    return cfg


def test_pipeline_fits_and_writes_tables(tmp_path: Path):
    out = tmp_path / "ms"
    results = run_pipeline(_cfg(out), recordings=_recordings())

    assert set(results) == {"rec0", "rec1"}
    for name in ("summary", "states", "transitions", "kmers", "peaks", "sequence", "fit"):
        assert (out / f"{name}.csv").exists(), name
    protos = read_prototypes(out / "prototypes.txt")
    assert protos.n_states == 3
    assert list(protos.ch_names) == CH_NAMES

    states = pd.read_csv(out / "states.csv")
    assert len(states) == 6
    assert sorted(states["ID"].unique()) == ["rec0", "rec1"]
    summary = pd.read_csv(out / "summary.csv")
    assert (summary["GEV"] > 0.8).all()
    seq = pd.read_csv(out / "sequence.csv")
    assert len(seq) == sum(r.labels.size for r in results.values())
    assert set(seq["STATE"]) <= {"A", "B", "C"}


def test_min_run_is_honored(tmp_path: Path):
    results = run_pipeline(_cfg(tmp_path, backfit={"min_run": 5}), recordings=_recordings(1))
    labels = results["rec0"].labels
    change = np.flatnonzero(np.diff(labels)) + 1
    lengths = np.diff(np.concatenate([[0], change, [labels.size]]))
    assert lengths.min() >= 5


def test_pipeline_with_saved_prototypes_and_csv_inputs(tmp_path: Path, planted_maps):
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    for rec in _recordings(2):
        pd.DataFrame(rec.data, columns=rec.ch_names).to_csv(data_dir / f"{rec.recording_id}.csv", index=False)
    proto_path = write_prototypes(PrototypeSet(planted_maps, CH_NAMES), tmp_path / "planted.txt")

    cfg = _cfg(
        tmp_path / "out",
        data={"inputs": str(data_dir / "*.csv"), "sfreq": 250},
        backfit={"prototypes": str(proto_path)},
        complexity={"n_surrogates": 10},
    )
    results = run_pipeline(cfg)
    assert set(results) == {"rec0", "rec1"}
    assert not (tmp_path / "out" / "fit.csv").exists()
    kmers = pd.read_csv(tmp_path / "out" / "kmers.csv")
    assert {"ID", "kmer", "OBS", "EXP", "Z", "P"} <= set(kmers.columns)


def test_channel_mismatch_stops_the_batch(tmp_path: Path, planted_maps):
    proto_path = write_prototypes(PrototypeSet(planted_maps, CH_NAMES), tmp_path / "planted.txt")
    good = _recordings(1)
    bad = Recording(data=np.random.default_rng(0).standard_normal((100, 3)), ch_names=["x", "y", "z"], sfreq=250,
                    recording_id="bad")
    cfg = _cfg(tmp_path / "out", backfit={"prototypes": str(proto_path)})
    with pytest.raises(DimensionMismatch):
        run_pipeline(cfg, recordings=good + [bad])


def test_channel_mismatch_surfaces_from_workers(tmp_path: Path, planted_maps):
    proto_path = write_prototypes(PrototypeSet(planted_maps, CH_NAMES), tmp_path / "planted.txt")
    bad = Recording(data=np.random.default_rng(0).standard_normal((100, 3)), ch_names=["x", "y", "z"], sfreq=250,
                    recording_id="bad")
    cfg = _cfg(tmp_path / "out", backfit={"prototypes": str(proto_path)})
    cfg["n_jobs"] = 2
    with pytest.raises(DimensionMismatch):
        run_pipeline(cfg, recordings=_recordings(1) + [bad])


def test_unloadable_recording_is_skipped(tmp_path: Path, planted_maps):
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    rec = _recordings(1)[0]
    pd.DataFrame(rec.data, columns=rec.ch_names).to_csv(data_dir / "rec0.csv", index=False)
    pd.DataFrame({"Cz": np.arange(50.0)}).to_csv(data_dir / "mono.csv", index=False)
    proto_path = write_prototypes(PrototypeSet(planted_maps, CH_NAMES), tmp_path / "planted.txt")
    cfg = _cfg(
        tmp_path / "out",
        data={"inputs": str(data_dir / "*.csv"), "sfreq": 250},
        backfit={"prototypes": str(proto_path)},
    )
    assert set(run_pipeline(cfg)) == {"rec0"}


def test_flat_samples_are_marked_in_sequence_table(tmp_path: Path, planted_maps):
    rec = _recordings(1)[0]
    X = rec.data.copy()
    X[100:110] = 0.0
    flat = Recording(data=X, ch_names=rec.ch_names, sfreq=250, recording_id="flat")
    proto_path = write_prototypes(PrototypeSet(planted_maps, CH_NAMES), tmp_path / "planted.txt")
    results = run_pipeline(_cfg(tmp_path, backfit={"prototypes": str(proto_path)}), recordings=[flat])
    assert (results["flat"].labels[100:110] == -1).all()
    assert results["flat"].summary()["N_DEGENERATE"] == 10
    seq = pd.read_csv(tmp_path / "sequence.csv")
    assert seq["STATE"].iloc[100:110].tolist() == ["-"] * 10
    assert set(seq["STATE"].drop(range(100, 110))) <= {"A", "B", "C"}


def test_pipeline_parallel_matches_sequential(tmp_path: Path, planted_maps):
    proto_path = write_prototypes(PrototypeSet(planted_maps, CH_NAMES), tmp_path / "planted.txt")
    cfg = _cfg(tmp_path / "seq", backfit={"prototypes": str(proto_path)})
    seq = run_pipeline(cfg, recordings=_recordings())
    cfg_par = _cfg(tmp_path / "par", backfit={"prototypes": str(proto_path)})
    cfg_par["n_jobs"] = 2
    par = run_pipeline(cfg_par, recordings=_recordings())
    for rid in seq:
        assert np.array_equal(seq[rid].labels, par[rid].labels)


def test_no_recordings_returns_empty(tmp_path: Path):
    cfg = _cfg(tmp_path, data={"inputs": str(tmp_path / "missing_*.csv")})
    assert run_pipeline(cfg) == {}


def test_analyze_recording_matches_channels_by_label(synthetic_recording, planted_maps):
    # prototypes stored with channels in reverse order
    protos = PrototypeSet(planted_maps[::-1], CH_NAMES[::-1])
    res = analyze_recording(synthetic_recording, protos, min_run=2)
    direct = analyze_recording(synthetic_recording, PrototypeSet(planted_maps, CH_NAMES), min_run=2)
    assert np.array_equal(res.labels, direct.labels)
    assert res.summary()["K"] == 3


def test_analyze_recording_rejects_wrong_channel_count(synthetic_recording, planted_maps):
    protos = PrototypeSet(planted_maps[:6], [f"e{i}" for i in range(6)])
    with pytest.raises(DimensionMismatch):
        analyze_recording(synthetic_recording, protos)


def test_fit_from_recordings_pools_peaks():
    res = fit_from_recordings(_recordings(2), {"fit": {"ks": [2, 3], "n_reps": 3}})
    assert set(res.solutions) == {2, 3}
    assert list(res.prototypes.ch_names) == CH_NAMES


def test_unmatched_labels_raise_unless_position_matching(synthetic_recording, planted_maps):
    protos = PrototypeSet(planted_maps, [f"e{i}" for i in range(8)])
    with pytest.raises(DimensionMismatch):
        analyze_recording(synthetic_recording, protos)
    res = analyze_recording(synthetic_recording, protos, match_by_position=True)
    direct = analyze_recording(synthetic_recording, PrototypeSet(planted_maps, CH_NAMES))
    assert np.array_equal(res.labels, direct.labels)


def test_position_matching_from_config(tmp_path: Path, planted_maps):
    proto_path = write_prototypes(PrototypeSet(planted_maps, [f"e{i}" for i in range(8)]), tmp_path / "p.txt")
    cfg = _cfg(tmp_path / "out", backfit={"prototypes": str(proto_path), "match_by_position": True})
    assert set(run_pipeline(cfg, recordings=_recordings(1))) == {"rec0"}
