"""Utility functions for haplomix.

Log-gamma provider, simplex reparameterisation, and count-file I/O.
"""

from __future__ import annotations

import functools
import gzip
import re
from collections.abc import Iterable, Iterator
from pathlib import Path

import numpy as np
from scipy.special import expit, gammaln, logit

from haplomix.types import BASES, N_BASES, N_STRANDS, CountRecord

# ---------------------------------------------------------------------------
# Log-gamma
# ---------------------------------------------------------------------------


class LogGamma:
    """Source of ``log(Gamma(x))`` values for ``x > 0``.

    Array arguments are evaluated directly with ``scipy.special.gammaln``
    and never touch the cache. Scalar arguments are optionally memoised
    after rounding ``x`` to ``precision`` decimals. In practice only the
    closed-form likelihood of conserved sites makes scalar calls; the
    assignment enumeration of variable sites always passes arrays, so the
    cache has little effect there.

    Args:
        cache_size: Maximum number of memoised scalar values. 0 disables
            the cache.
        precision: Decimals kept when rounding scalar arguments for the
            cache key.
    """

    def __init__(self, cache_size: int = 0, precision: int = 10):
        if cache_size < 0:
            raise ValueError(f"cache_size must be >= 0, got {cache_size}")
        self.cache_size = cache_size
        self.precision = precision
        self._cached = None
        if cache_size > 0:
            self._cached = functools.lru_cache(maxsize=cache_size)(_scalar_gammaln)

    def __call__(self, x):
        if np.ndim(x) == 0:
            if self._cached is not None:
                return self._cached(round(float(x), self.precision))
            return _scalar_gammaln(float(x))
        return gammaln(x)

    def cache_info(self):
        """Hit/miss statistics of the scalar cache (None when disabled)."""
        if self._cached is None:
            return None
        return self._cached.cache_info()


def _scalar_gammaln(x: float) -> float:
    return float(gammaln(x))


# ---------------------------------------------------------------------------
# Simplex reparameterisation
# ---------------------------------------------------------------------------

# Fractions are clipped away from {0, 1} before logit so the inverse map
# stays finite.
_THETA_EPS = 1e-12


def stick_breaking(theta: np.ndarray) -> np.ndarray:
    """Map H-1 break fractions in [0, 1] to a point on the H-simplex.

    ``pi[0] = theta[0]``, ``pi[i] = theta[i] * (1 - sum(pi[:i]))`` and the
    last component takes the remaining mass.
    """
    theta = np.asarray(theta, dtype=np.float64)
    pi = np.empty(len(theta) + 1)
    remaining = 1.0
    for i, t in enumerate(theta):
        pi[i] = remaining * t
        remaining -= pi[i]
    pi[-1] = max(remaining, 0.0)
    return pi


def inverse_stick_breaking(pi: np.ndarray) -> np.ndarray:
    """Recover break fractions from a simplex point.

    Components after the stick is used up get fraction 0.5.
    """
    pi = np.asarray(pi, dtype=np.float64)
    theta = np.empty(len(pi) - 1)
    remaining = 1.0
    for i in range(len(pi) - 1):
        theta[i] = pi[i] / remaining if remaining > 0 else 0.5
        remaining -= pi[i]
    return np.clip(theta, 0.0, 1.0)


def frequencies_from_unconstrained(x: np.ndarray) -> np.ndarray:
    """Map unconstrained optimiser coordinates to haplotype frequencies."""
    return stick_breaking(expit(np.asarray(x, dtype=np.float64)))


def unconstrained_from_frequencies(pi: np.ndarray) -> np.ndarray:
    """Inverse of :func:`frequencies_from_unconstrained`."""
    theta = np.clip(inverse_stick_breaking(pi), _THETA_EPS, 1.0 - _THETA_EPS)
    return logit(theta)


# ---------------------------------------------------------------------------
# Count files
# ---------------------------------------------------------------------------

# reference, position, ref_base, A+, A-, C+, C-, G+, G-, T+, T-
_N_FIELDS = 3 + N_BASES * N_STRANDS
_FIELD_SEP = re.compile(r"[,\t]")
_HEADER_MARKER = "Position"
_COUNT_HEADER = "Reference,Position,RefBase," + ",".join(
    f"{b}{s}" for b in BASES for s in ("+", "-")
)


def _open_text(path: Path, mode: str):
    opener = gzip.open if str(path).endswith(".gz") else open
    return opener(path, mode + "t")


def read_file_list(path: Path) -> list[Path]:
    """Read a list-of-files file.

    One count-file name per line, resolved relative to the list's own
    directory. Blank lines and ``#`` comments are ignored. The order of the
    entries defines the timepoint index.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File list not found: {path}")
    base_dir = path.resolve().parent
    files = []
    for line in path.read_text().splitlines():
        name = line.strip()
        if not name or name.startswith("#"):
            continue
        files.append(base_dir / name)
    if not files:
        raise ValueError(f"File list {path} names no count files")
    return files


def parse_count_line(line: str) -> CountRecord:
    """Parse one data line into a CountRecord.

    Raises:
        ValueError: if the line has too few fields, a non-integer field, or
            a negative count.
    """
    fields = _FIELD_SEP.split(line.strip())
    if len(fields) < _N_FIELDS:
        raise ValueError(
            f"expected at least {_N_FIELDS} fields, got {len(fields)}"
        )
    try:
        position = int(fields[1])
        values = [int(f) for f in fields[3:_N_FIELDS]]
    except ValueError as exc:
        raise ValueError(f"non-numeric field ({exc})") from exc
    # Field order is base-major: (A+, A-, C+, C-, ...), counts are [strand][base].
    counts = np.array(values, dtype=np.int64).reshape(N_BASES, N_STRANDS).T
    return CountRecord(position=position, counts=counts)


def parse_count_file(path: Path) -> Iterator[CountRecord]:
    """Parse a count file (plain or gzipped).

    Header lines (containing ``Position``) and blank lines are skipped.
    Yields CountRecord objects in file order.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Count file not found: {path}")
    with _open_text(path, "r") as fh:
        for line_no, line in enumerate(fh, start=1):
            if not line.strip() or _HEADER_MARKER in line:
                continue
            try:
                yield parse_count_line(line)
            except ValueError as exc:
                raise ValueError(f"{path}:{line_no}: malformed count line: {exc}") from exc


def load_count_files(list_path: Path) -> list[list[CountRecord]]:
    """Load every count file named in a file list.

    Returns:
        One list of CountRecords per timepoint, in file-list order.
    """
    return [list(parse_count_file(p)) for p in read_file_list(list_path)]


def write_count_file(
    records: Iterable[CountRecord], path: Path, reference: str = "ref"
) -> None:
    """Write CountRecords in the format read by :func:`parse_count_file`."""
    with _open_text(Path(path), "w") as fh:
        fh.write(_COUNT_HEADER + "\n")
        for rec in records:
            values = rec.counts.T.reshape(-1)
            ref_base = BASES[int(np.argmax(rec.counts.sum(axis=0)))]
            fh.write(
                f"{reference},{rec.position},{ref_base},"
                + ",".join(str(int(v)) for v in values)
                + "\n"
            )


def write_file_list(count_files: Iterable[Path], path: Path) -> None:
    """Write a file list naming count files relative to its directory."""
    path = Path(path)
    base_dir = path.resolve().parent
    lines = []
    for f in count_files:
        f = Path(f).resolve()
        try:
            lines.append(str(f.relative_to(base_dir)))
        except ValueError:
            lines.append(str(f))
    path.write_text("\n".join(lines) + "\n")
