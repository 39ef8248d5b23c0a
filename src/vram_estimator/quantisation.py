"""Quantisation catalogues and bits-per-weight parsing."""
from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from .errors import InvalidQuantisationError


class KVCacheQuantisation(str, Enum):
    FP16 = "fp16"
    Q8_0 = "q8_0"
    Q4_0 = "q4_0"

    @classmethod
    def parse(cls, value: "KVCacheQuantisation | str") -> "KVCacheQuantisation":
        """Normalise a user supplied KV cache level.

        Accepts enum members, their values, or a few common spellings
        (``f16``, ``q8``, ``int4`` ...), case-insensitively.
        """

        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        key = _KV_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise ValueError(f"Unknown KV cache quantisation: {value}") from None


_KV_ALIASES: dict[str, str] = {
    "f16": "fp16",
    "float16": "fp16",
    "half": "fp16",
    "q8": "q8_0",
    "int8": "q8_0",
    "q4": "q4_0",
    "int4": "q4_0",
}

_KV_CACHE_BITS: dict[KVCacheQuantisation, int] = {
    KVCacheQuantisation.FP16: 16,
    KVCacheQuantisation.Q8_0: 8,
    KVCacheQuantisation.Q4_0: 4,
}


def kv_cache_bits(level: KVCacheQuantisation | str) -> int:
    return _KV_CACHE_BITS[KVCacheQuantisation.parse(level)]


@dataclass(frozen=True)
class QuantisationEntry:
    name: str
    bpw: float


# GGUF quantisation types and their bits per weight. Order matters: it breaks
# ties between entries with the same BPW.
GGUF: tuple[QuantisationEntry, ...] = (
    QuantisationEntry("Q8_0", 8.5),
    QuantisationEntry("Q6_K", 6.59),
    QuantisationEntry("Q5_K_L", 5.75),
    QuantisationEntry("Q5_K_M", 5.69),
    QuantisationEntry("Q5_K_S", 5.54),
    QuantisationEntry("Q5_0", 5.54),
    QuantisationEntry("Q4_K_L", 4.9),
    QuantisationEntry("Q4_K_M", 4.85),
    QuantisationEntry("Q4_K_S", 4.58),
    QuantisationEntry("Q4_0", 4.55),
    QuantisationEntry("IQ4_NL", 4.5),
    QuantisationEntry("Q3_K_L", 4.27),
    QuantisationEntry("IQ4_XS", 4.25),
    QuantisationEntry("Q3_K_M", 3.91),
    QuantisationEntry("IQ3_M", 3.7),
    QuantisationEntry("IQ3_S", 3.5),
    QuantisationEntry("Q3_K_S", 3.5),
    QuantisationEntry("Q2_K", 3.35),
    QuantisationEntry("IQ3_XS", 3.3),
    QuantisationEntry("IQ3_XXS", 3.06),
    QuantisationEntry("IQ2_M", 2.7),
    QuantisationEntry("IQ2_S", 2.5),
    QuantisationEntry("IQ2_XS", 2.31),
    QuantisationEntry("IQ2_XXS", 2.06),
    QuantisationEntry("IQ1_S", 1.56),
)


def _exl2_range(high: float = 6.0, low: float = 2.0,
                step: float = 0.05) -> tuple[QuantisationEntry, ...]:
    # integer stepping so the low end is not lost to float drift
    count = int(round((high - low) / step)) + 1
    entries = []
    for i in range(count):
        bpw = round(high - i * step, 2)
        entries.append(QuantisationEntry(f"{bpw:.2f}", bpw))
    return tuple(entries)


# EXL2 allows any average BPW; sample 6.00 down to 2.00 in 0.05 steps.
EXL2: tuple[QuantisationEntry, ...] = _exl2_range()

_CATALOGUES: dict[str, tuple[QuantisationEntry, ...]] = {
    "gguf": GGUF,
    "exl2": EXL2,
}

_GGUF_BY_NAME: dict[str, float] = {entry.name: entry.bpw for entry in GGUF}


def get_catalogue(name: str) -> tuple[QuantisationEntry, ...]:
    catalogue = _CATALOGUES.get(name.strip().lower())
    if catalogue is None:
        raise InvalidQuantisationError(name,
                                       closest_match(name, _CATALOGUES))
    return catalogue


def sorted_by_bpw(entries: Iterable[QuantisationEntry],
                  descending: bool = True) -> list[QuantisationEntry]:
    """Order entries by BPW; ``sorted`` is stable so equal BPWs keep
    declaration order in both directions."""

    if descending:
        return sorted(entries, key=lambda entry: -entry.bpw)
    return sorted(entries, key=lambda entry: entry.bpw)


def levenshtein_distance(s1: str, s2: str) -> int:
    """Case-insensitive edit distance between two strings."""

    s1 = s1.upper()
    s2 = s2.upper()
    previous = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1, start=1):
        current = [i]
        for j, c2 in enumerate(s2, start=1):
            if c1 == c2:
                current.append(previous[j - 1])
            else:
                current.append(min(previous[j], current[j - 1],
                                   previous[j - 1]) + 1)
        previous = current
    return previous[-1]


def closest_match(token: str, candidates: Iterable[str]) -> str | None:
    """Nearest candidate by edit distance; the first one wins ties."""

    return min(candidates,
               key=lambda candidate: levenshtein_distance(token, candidate),
               default=None)


def closest_quantisation(token: str) -> str:
    """Return the GGUF catalogue key nearest to *token*."""

    return min(_GGUF_BY_NAME,
               key=lambda name: levenshtein_distance(token, name))


def _parse_number(token: str) -> float | None:
    # float() accepts digit separators such as "4_85"
    if "_" in token:
        return None
    try:
        value = float(token)
    except ValueError:
        return None
    return value


def resolve_bpw(token: str) -> float:
    """Turn a BPW literal (``"4.85"``) or GGUF key (``"q4_k_m"``) into BPW."""

    cleaned = token.strip()
    number = _parse_number(cleaned)
    if number is not None:
        if not math.isfinite(number) or number <= 0:
            raise InvalidQuantisationError(token)
        return number

    bpw = _GGUF_BY_NAME.get(cleaned.upper())
    if bpw is not None:
        return bpw

    if not cleaned:
        raise InvalidQuantisationError(token)
    raise InvalidQuantisationError(cleaned.upper(),
                                   closest_quantisation(cleaned))


def lm_head_bpw(weight_bpw: float, threshold: float = 6.0) -> float:
    return 8.0 if weight_bpw > threshold else 6.0


@dataclass(frozen=True)
class PrecisionTriple:
    """Bits per weight used for weights, the LM head and the KV cache."""

    weight_bpw: float
    lm_head_bpw: float
    kv_cache_bpw: float

    @classmethod
    def derive(cls, weight_bpw: float,
               kv_level: KVCacheQuantisation | str = KVCacheQuantisation.FP16,
               lm_head_threshold: float = 6.0) -> "PrecisionTriple":
        return cls(weight_bpw=weight_bpw,
                   lm_head_bpw=lm_head_bpw(weight_bpw, lm_head_threshold),
                   kv_cache_bpw=float(kv_cache_bits(kv_level)))
