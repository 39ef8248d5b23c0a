"""High-level VRAM estimates and the searches built on them."""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass

from .errors import InvalidQuantisationError
from .errors import SearchExhaustedError
from .memory_model import MemoryModel
from .model_shapes import ModelShape
from .providers import ModelConfigProvider
from .quantisation import KVCacheQuantisation
from .quantisation import get_catalogue
from .quantisation import resolve_bpw
from .quantisation import sorted_by_bpw

logger = logging.getLogger(__name__)

MIN_CONTEXT = 512
CONTEXT_REFINE_STEP = 100


@dataclass(frozen=True)
class SearchResult:
    value: int | str
    vram: float
    fits: bool


@dataclass
class VRAMEstimation:
    model_id: str
    context: int
    kv_cache: KVCacheQuantisation
    budget_gb: float
    quantisation: str
    estimated_vram: float
    fits: bool
    max_context: int
    recommended_quantisation: str

    def as_dict(self) -> dict[str, object]:
        payload = dataclasses.asdict(self)
        payload["kv_cache"] = self.kv_cache.value
        return payload

    def render_summary(self) -> str:
        verdict = "fits" if self.fits else "does not fit"
        lines = [
            f"Model: {self.model_id}",
            f"  Quantisation        : {self.quantisation}",
            f"  KV cache            : {self.kv_cache.value}",
            f"  Context             : {self.context}",
            f"  Estimated VRAM      : {self.estimated_vram:.2f} GB "
            f"({verdict} in {self.budget_gb:.2f} GB)",
            f"  Max context         : {self.max_context}",
            f"  Recommended quant   : {self.recommended_quantisation}",
        ]
        return "\n".join(lines)


def _round_gb(value: float) -> float:
    return round(value, 2)


class VRAMEstimator:
    """Answer VRAM questions for models resolved through a provider.

    ``num_hidden_layers`` stands in for shapes that do not report a layer
    count (local models on some servers); it is never applied to shapes that
    already have one.
    """

    def __init__(self,
                 provider: ModelConfigProvider,
                 memory_model: MemoryModel | None = None,
                 num_gpus: int = 1,
                 grouped_query_attention: bool = True,
                 num_hidden_layers: int | None = None) -> None:
        self.provider = provider
        self.memory_model = memory_model or MemoryModel()
        self.num_gpus = num_gpus
        self.grouped_query_attention = grouped_query_attention
        self.num_hidden_layers = num_hidden_layers

    def shape(self, model_id: str, access_token: str | None = None) -> ModelShape:
        shape = self.provider.resolve(model_id, access_token)
        if shape.num_hidden_layers <= 0 and self.num_hidden_layers:
            shape = dataclasses.replace(shape,
                                        num_hidden_layers=self.num_hidden_layers)
        return shape.validate(model_id)

    def _bpw(self, bpw_token: str | None, shape: ModelShape) -> float:
        token = bpw_token or shape.quantisation
        if not token:
            raise InvalidQuantisationError(bpw_token or "")
        return resolve_bpw(token)

    def _estimate(self, shape: ModelShape, bpw: float, context: int,
                  kv_level: KVCacheQuantisation) -> float:
        precision = self.memory_model.precision(bpw, kv_level)
        vram = self.memory_model.estimate(shape, precision, context,
                                          self.num_gpus,
                                          self.grouped_query_attention)
        return _round_gb(vram)

    def estimate_vram(self,
                      model_id: str,
                      bpw_token: str | None,
                      context: int = 0,
                      kv_level: KVCacheQuantisation | str = KVCacheQuantisation.FP16,
                      access_token: str | None = None) -> float:
        """Estimated VRAM in GB, rounded to two decimals.

        A *context* of 0 means the model's maximum context length. An empty
        *bpw_token* falls back to the quantisation a local server reports.
        """

        kv_level = KVCacheQuantisation.parse(kv_level)
        shape = self.shape(model_id, access_token)
        bpw = self._bpw(bpw_token, shape)
        if context == 0:
            context = shape.max_context_length
        return self._estimate(shape, bpw, context, kv_level)

    def search_context(self,
                       model_id: str,
                       budget_gb: float,
                       bpw_token: str | None,
                       kv_level: KVCacheQuantisation | str = KVCacheQuantisation.FP16,
                       access_token: str | None = None) -> SearchResult:
        kv_level = KVCacheQuantisation.parse(kv_level)
        shape = self.shape(model_id, access_token)
        bpw = self._bpw(bpw_token, shape)
        max_context = shape.max_context_length

        def estimate(context: int) -> float:
            return self._estimate(shape, bpw, context, kv_level)

        floor_vram = estimate(MIN_CONTEXT)
        if max_context < MIN_CONTEXT or floor_vram > budget_gb:
            raise SearchExhaustedError("context", MIN_CONTEXT, floor_vram,
                                       budget_gb)

        low, high = MIN_CONTEXT, max_context
        while low < high:
            mid = (low + high + 1) // 2
            if estimate(mid) > budget_gb:
                high = mid - 1
            else:
                low = mid

        # coarse forward pass; may land up to a step short of the optimum
        context = low
        while context <= max_context:
            if estimate(context) > budget_gb:
                break
            context += CONTEXT_REFINE_STEP
        context -= CONTEXT_REFINE_STEP

        vram = estimate(context)
        logger.debug("Max context for %s in %.2f GB: %d (%.2f GB)", model_id,
                     budget_gb, context, vram)
        return SearchResult(context, vram, vram <= budget_gb)

    def max_context_for_budget(self,
                               model_id: str,
                               budget_gb: float,
                               bpw_token: str | None,
                               kv_level: KVCacheQuantisation | str = KVCacheQuantisation.FP16,
                               access_token: str | None = None) -> int:
        result = self.search_context(model_id, budget_gb, bpw_token, kv_level,
                                     access_token)
        return int(result.value)

    def search_quantisation(self,
                            model_id: str,
                            budget_gb: float,
                            context: int = 0,
                            kv_level: KVCacheQuantisation | str = KVCacheQuantisation.FP16,
                            catalogue: str = "gguf",
                            access_token: str | None = None) -> SearchResult:
        kv_level = KVCacheQuantisation.parse(kv_level)
        entries = sorted_by_bpw(get_catalogue(catalogue))
        shape = self.shape(model_id, access_token)
        if context == 0:
            context = shape.max_context_length

        vram = 0.0
        for entry in entries:
            vram = self._estimate(shape, entry.bpw, context, kv_level)
            if vram <= budget_gb:
                logger.debug("Best %s quantisation for %s in %.2f GB: %s",
                             catalogue, model_id, budget_gb, entry.name)
                return SearchResult(entry.name, vram, True)

        raise SearchExhaustedError("quantisation", entries[-1].name, vram,
                                   budget_gb)

    def best_quantisation_for_budget(self,
                                     model_id: str,
                                     budget_gb: float,
                                     context: int = 0,
                                     kv_level: KVCacheQuantisation | str = KVCacheQuantisation.FP16,
                                     catalogue: str = "gguf",
                                     access_token: str | None = None) -> str:
        result = self.search_quantisation(model_id, budget_gb, context,
                                          kv_level, catalogue, access_token)
        return str(result.value)

    def estimate_all(self,
                     model_id: str,
                     budget_gb: float,
                     bpw_token: str | None,
                     context: int = 0,
                     kv_level: KVCacheQuantisation | str = KVCacheQuantisation.FP16,
                     access_token: str | None = None) -> VRAMEstimation:
        kv_level = KVCacheQuantisation.parse(kv_level)
        shape = self.shape(model_id, access_token)
        if context == 0:
            context = shape.max_context_length
        quantisation = bpw_token or shape.quantisation or ""

        vram = self.estimate_vram(model_id, quantisation, context, kv_level,
                                  access_token)
        max_context = self.max_context_for_budget(model_id, budget_gb,
                                                  quantisation, kv_level,
                                                  access_token)
        recommended = self.best_quantisation_for_budget(model_id, budget_gb,
                                                        context, kv_level,
                                                        "gguf", access_token)
        return VRAMEstimation(
            model_id=model_id,
            context=context,
            kv_cache=kv_level,
            budget_gb=budget_gb,
            quantisation=quantisation,
            estimated_vram=vram,
            fits=vram <= budget_gb,
            max_context=max_context,
            recommended_quantisation=recommended,
        )
