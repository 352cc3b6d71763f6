"""Sequence complexity for microstate label sequences.

Functions:
  - lzw_compress(symbols) / lzw_decompress(codes): classic LZW with a 256-entry
    single-byte bootstrap dictionary
  - lzw_complexity(symbols) -> number of emitted codes
  - kmer_equivalence_key(kmer) -> anagram class key
  - count_kmers(sequence, k1, k2)
  - analyze_kmers(sequence, k1, k2, n_surrogates, random_state) -> KmerTable
  - compute_complexity(labels, ...) -> ComplexityBundle
Notes:
  - labels are encoded as single bytes for LZW and as letters A, B, ... for k-mers.
  - k-mer lengths are bounded to [2, 10].
  - the k-mer null shuffles the sequence, which keeps symbol frequencies and
    destroys ordering.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence
import numpy as np
import pandas as pd
from scipy.stats import norm

from ..segmentation.backfit import observed
from ..segmentation.smoothing import run_length_encode
from ..utils.logger import get_logger

logger = get_logger(__name__)

KMER_MIN = 2
KMER_MAX = 10


def _as_bytes(symbols: Sequence[int] | bytes | str) -> bytes:
    if isinstance(symbols, bytes):
        return symbols
    if isinstance(symbols, str):
        return symbols.encode("latin-1")
    arr = np.asarray(symbols, dtype=int)
    if arr.size and (arr.min() < 0 or arr.max() > 255):
        raise ValueError("LZW symbols must fit in one byte (0..255)")
    return bytes(arr.astype(np.uint8).tolist())


def lzw_compress(symbols: Sequence[int] | bytes | str) -> List[int]:
    """
    LZW-compress a symbol sequence.

    Args:
        symbols: Byte string, latin-1 string or sequence of ints in 0..255.

    Returns:
        List of emitted codes.
    """
    data = _as_bytes(symbols)
    dictionary: Dict[bytes, int] = {bytes([i]): i for i in range(256)}
    codes: List[int] = []
    w = b""
    for byte in data:
        wc = w + bytes([byte])
        if wc in dictionary:
            w = wc
        else:
            codes.append(dictionary[w])
            dictionary[wc] = len(dictionary)
            w = bytes([byte])
    if w:
        codes.append(dictionary[w])
    return codes


def lzw_decompress(codes: Sequence[int]) -> bytes:
    """Inverse of `lzw_compress`."""
    if not codes:
        return b""
    dictionary: Dict[int, bytes] = {i: bytes([i]) for i in range(256)}
    it = iter(codes)
    w = dictionary[next(it)]
    out = [w]
    for code in it:
        if code in dictionary:
            entry = dictionary[code]
        elif code == len(dictionary):
            entry = w + w[:1]
        else:
            raise ValueError(f"Bad LZW code: {code}")
        out.append(entry)
        dictionary[len(dictionary)] = w + entry[:1]
        w = entry
    return b"".join(out)


def lzw_complexity(symbols: Sequence[int] | bytes | str) -> int:
    """Number of LZW codes needed for the sequence (0 for an empty sequence)."""
    return len(lzw_compress(symbols))


def labels_to_string(labels: Sequence[int]) -> str:
    """Encode integer labels 0, 1, 2, ... as letters A, B, C, ..."""
    return "".join(chr(ord("A") + int(x)) for x in labels)


def kmer_equivalence_key(kmer: str) -> str:
    """Two k-mers are equivalent iff one is an anagram of the other."""
    return "".join(sorted(kmer))


def _bounded(k1: int, k2: int) -> range:
    lo = max(KMER_MIN, int(k1))
    hi = min(KMER_MAX, int(k2))
    if lo > hi:
        raise ValueError(f"Empty k-mer range after bounding to [{KMER_MIN}, {KMER_MAX}]: k1={k1}, k2={k2}")
    return range(lo, hi + 1)


def count_kmers(sequence: str, k1: int = 2, k2: int = 4) -> Dict[str, int]:
    """
    Count every contiguous substring with length in [k1, k2].

    Args:
        sequence: Symbol string.
        k1: Shortest k-mer (raised to 2 if smaller).
        k2: Longest k-mer (lowered to 10 if larger).

    Returns:
        Mapping k-mer -> observed count.
    """
    counts: Dict[str, int] = {}
    n = len(sequence)
    for k in _bounded(k1, k2):
        for i in range(n - k + 1):
            s = sequence[i : i + k]
            counts[s] = counts.get(s, 0) + 1
    return counts


def equivalence_groups(kmers) -> Dict[str, List[str]]:
    """Group k-mers into permutation-equivalence classes keyed by sorted symbols."""
    groups: Dict[str, List[str]] = {}
    for s in sorted(kmers):
        groups.setdefault(kmer_equivalence_key(s), []).append(s)
    return groups


@dataclass
class KmerTable:
    counts: Dict[str, int]
    groups: Dict[str, List[str]]
    null: Optional[pd.DataFrame] = None
    n_surrogates: int = 0

    def to_frame(self) -> pd.DataFrame:
        """
        One row per observed k-mer: L, kmer, group, OBS, GRP_OBS, W_OBS and, when a
        surrogate null was run, EXP, SD, Z, P, W_EXP, W_Z.
        """
        rows = []
        group_tot = {g: sum(self.counts[s] for s in members) for g, members in self.groups.items()}
        for s in sorted(self.counts, key=lambda x: (len(x), x)):
            g = kmer_equivalence_key(s)
            rows.append(
                {
                    "L": len(s),
                    "kmer": s,
                    "group": g,
                    "OBS": self.counts[s],
                    "GRP_OBS": group_tot[g],
                    "W_OBS": self.counts[s] / group_tot[g],
                }
            )
        df = pd.DataFrame(rows, columns=["L", "kmer", "group", "OBS", "GRP_OBS", "W_OBS"])
        if self.null is not None and not df.empty:
            df = df.merge(self.null, on="kmer", how="left")
        return df


def _surrogate_null(
    sequence: str, counts: Dict[str, int], k1: int, k2: int, n_surrogates: int, random_state
) -> pd.DataFrame:
    rng = np.random.default_rng(random_state)
    kmers = sorted(counts)
    index = {s: i for i, s in enumerate(kmers)}
    groups = equivalence_groups(kmers)
    members = {g: [index[s] for s in ss] for g, ss in groups.items()}
    sims = np.zeros((n_surrogates, len(kmers)))
    within = np.full((n_surrogates, len(kmers)), np.nan)
    symbols = np.array(list(sequence))
    for r in range(n_surrogates):
        shuffled = "".join(rng.permutation(symbols))
        sim = count_kmers(shuffled, k1, k2)
        for s, i in index.items():
            sims[r, i] = sim.get(s, 0)
        for g, idx in members.items():
            tot = sims[r, idx].sum()
            if tot > 0:
                within[r, idx] = sims[r, idx] / tot

    obs = np.array([counts[s] for s in kmers], dtype=float)
    grp_tot = {g: obs[idx].sum() for g, idx in members.items()}
    w_obs = np.array([obs[index[s]] / grp_tot[kmer_equivalence_key(s)] for s in kmers])
    exp = sims.mean(axis=0)
    sd = sims.std(axis=0, ddof=1) if n_surrogates > 1 else np.zeros(len(kmers))
    w_exp = np.nanmean(within, axis=0) if n_surrogates else np.full(len(kmers), np.nan)
    w_sd = np.nanstd(within, axis=0, ddof=1) if n_surrogates > 1 else np.zeros(len(kmers))
    with np.errstate(divide="ignore", invalid="ignore"):
        z = np.where(sd > 0, (obs - exp) / sd, np.nan)
        w_z = np.where(w_sd > 0, (w_obs - w_exp) / w_sd, np.nan)
    p = 2.0 * norm.sf(np.abs(z))
    return pd.DataFrame({"kmer": kmers, "EXP": exp, "SD": sd, "Z": z, "P": p, "W_EXP": w_exp, "W_Z": w_z})


def analyze_kmers(
    sequence: str,
    k1: int = 2,
    k2: int = 4,
    n_surrogates: int = 0,
    random_state: int | None = None,
) -> KmerTable:
    """
    Tabulate k-mers, their permutation-equivalence classes and an optional shuffle null.

    Args:
        sequence: Symbol string (typically run-collapsed state letters).
        k1, k2: K-mer length range, bounded to [2, 10].
        n_surrogates: Number of shuffled sequences for the memoryless null (0 = none).
        random_state: Seed for shuffling.

    Returns:
        KmerTable.
    """
    counts = count_kmers(sequence, k1, k2)
    groups = equivalence_groups(counts)
    null = None
    if n_surrogates and counts:
        null = _surrogate_null(sequence, counts, k1, k2, int(n_surrogates), random_state)
    logger.info("K-mers: %d distinct in %d equivalence groups (L=%d..%d)", len(counts), len(groups), k1, k2)
    return KmerTable(counts=counts, groups=groups, null=null, n_surrogates=int(n_surrogates))


@dataclass
class ComplexityBundle:
    lzw_points: int
    lzw_runs: int
    kmers: KmerTable
    n_points: int = 0
    n_runs: int = 0

    def summary(self) -> Dict[str, float]:
        return {
            "LZW": self.lzw_points,
            "LZW_RUNS": self.lzw_runs,
            "N_POINTS": self.n_points,
            "N_RUNS": self.n_runs,
        }


def compute_complexity(
    labels: Sequence[int],
    k1: int = 2,
    k2: int = 4,
    n_surrogates: int = 0,
    kmers_on: str = "runs",
    random_state: int | None = None,
) -> ComplexityBundle:
    """
    LZW complexity of the point and run sequences plus k-mer statistics.

    Args:
        labels: Final per-sample labels; unobserved samples (-1) are dropped first.
        k1, k2: K-mer length range.
        n_surrogates: Shuffled sequences for the k-mer null.
        kmers_on: 'runs' (run-collapsed sequence) or 'points' (per-sample sequence).
        random_state: Seed for the k-mer null.

    Returns:
        ComplexityBundle.
    """
    labels = observed(np.asarray(labels, dtype=int))
    run_labels, _ = run_length_encode(labels)
    if kmers_on not in ("runs", "points"):
        raise ValueError(f"kmers_on must be 'runs' or 'points', got {kmers_on!r}")
    seq = labels_to_string(run_labels if kmers_on == "runs" else labels)
    bundle = ComplexityBundle(
        lzw_points=lzw_complexity(labels),
        lzw_runs=lzw_complexity(run_labels),
        kmers=analyze_kmers(seq, k1, k2, n_surrogates=n_surrogates, random_state=random_state),
        n_points=int(labels.size),
        n_runs=int(run_labels.size),
    )
    logger.info("LZW complexity: %d codes (points), %d codes (runs)", bundle.lzw_points, bundle.lzw_runs)
    return bundle
