"""Quantisation x context tables of VRAM estimates."""
from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from typing import Sequence

from .estimator import VRAMEstimator
from .quantisation import GGUF
from .quantisation import KVCacheQuantisation
from .quantisation import QuantisationEntry
from .quantisation import sorted_by_bpw

CONTEXT_SIZES: tuple[int, ...] = (2048, 8192, 16384, 32768, 49152, 65536)
# from this size on, cells also show the quantised KV cache estimates
KV_DETAIL_FROM = 16384


@dataclass
class ContextVRAM:
    fp16: float
    q8_0: float
    q4_0: float


@dataclass
class QuantResult:
    quant_type: str
    bpw: float
    contexts: dict[int, ContextVRAM] = field(default_factory=dict)


@dataclass
class QuantResultTable:
    model_id: str
    budget_gb: float
    context_sizes: tuple[int, ...]
    results: list[QuantResult] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "model": self.model_id,
            "budget_gb": self.budget_gb,
            "results": [{
                "quant": result.quant_type,
                "bpw": result.bpw,
                "contexts": {
                    str(context): {
                        "fp16": vram.fp16,
                        "q8_0": vram.q8_0,
                        "q4_0": vram.q4_0,
                    }
                    for context, vram in result.contexts.items()
                },
            } for result in self.results],
        }

    def _cell(self, value: float) -> str:
        # '*' marks estimates over the budget
        marker = "*" if self.budget_gb and value > self.budget_gb else ""
        return f"{value:.1f}{marker}"

    def render_table(self) -> str:
        header = ["Quant|Ctx", "BPW"]
        header.extend(context_label(context) for context in self.context_sizes)

        rows = [header]
        for result in self.results:
            row = [result.quant_type, f"{result.bpw:.2f}"]
            for context in self.context_sizes:
                vram = result.contexts[context]
                cell = self._cell(vram.fp16)
                if context >= KV_DETAIL_FROM:
                    cell += f"({self._cell(vram.q8_0)},{self._cell(vram.q4_0)})"
                row.append(cell)
            rows.append(row)

        widths = [max(len(row[i]) for row in rows) for i in range(len(header))]

        def _line(row: Sequence[str]) -> str:
            cells = [value.ljust(width) for value, width in zip(row, widths)]
            return "| " + " | ".join(cells) + " |"

        separator = "|" + "|".join("-" * (width + 2) for width in widths) + "|"
        lines = [f"VRAM Estimation for Model: {self.model_id}", "",
                 _line(rows[0]), separator]
        lines.extend(_line(row) for row in rows[1:])
        if self.budget_gb:
            lines.append("")
            lines.append(f"* exceeds {self.budget_gb:.2f} GB")
        return "\n".join(lines)


def context_label(context: int) -> str:
    if context % 1024 == 0:
        return f"{context // 1024}K"
    return str(context)


def table_context_sizes(top_context: int) -> tuple[int, ...]:
    if top_context <= 0:
        raise ValueError(f"invalid top context: {top_context}")
    sizes = [size for size in CONTEXT_SIZES if size <= top_context]
    if top_context not in sizes:
        sizes.append(top_context)
    return tuple(sizes)


def generate_quant_table(estimator: VRAMEstimator,
                         model_id: str,
                         budget_gb: float = 0.0,
                         access_token: str | None = None,
                         top_context: int = CONTEXT_SIZES[-1],
                         entries: Sequence[QuantisationEntry] = GGUF
                         ) -> QuantResultTable:
    """Estimate every catalogue entry at every table context size."""

    context_sizes = table_context_sizes(top_context)
    table = QuantResultTable(model_id, budget_gb, context_sizes)
    for entry in sorted_by_bpw(entries, descending=False):
        result = QuantResult(entry.name, entry.bpw)
        for context in context_sizes:
            result.contexts[context] = ContextVRAM(*(
                estimator.estimate_vram(model_id, entry.name, context, level,
                                        access_token)
                for level in KVCacheQuantisation))
        table.results.append(result)
    return table
