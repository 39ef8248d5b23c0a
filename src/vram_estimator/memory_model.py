"""Inference memory model grouped by logical category."""
from __future__ import annotations

from dataclasses import dataclass

from .model_shapes import ModelShape
from .quantisation import PrecisionTriple

CUDA_OVERHEAD_BYTES = 500 * 1024 * 1024
LM_HEAD_THRESHOLD_BPW = 6.0


def to_gigabytes(value: float) -> float:
    return value / 2**30


@dataclass
class MemoryBuckets:
    overhead_bytes: float
    parameter_bytes: float
    activation_bytes: float
    output_bytes: float
    kv_cache_bytes: float

    @property
    def total_bytes(self) -> float:
        # summation order is part of the published numbers
        return (self.overhead_bytes + self.parameter_bytes +
                self.activation_bytes + self.output_bytes + self.kv_cache_bytes)

    def as_dict(self) -> dict[str, float]:
        return {
            "overhead": to_gigabytes(self.overhead_bytes),
            "parameters": to_gigabytes(self.parameter_bytes),
            "activations": to_gigabytes(self.activation_bytes),
            "output": to_gigabytes(self.output_bytes),
            "kv_cache": to_gigabytes(self.kv_cache_bytes),
            "total": to_gigabytes(self.total_bytes),
        }


def estimate_kv_cache_bytes(shape: ModelShape, precision: PrecisionTriple,
                            context: int,
                            grouped_query_attention: bool = True) -> float:
    total = float(context * 2 * shape.num_hidden_layers *
                  shape.hidden_size) * (precision.kv_cache_bpw / 8)
    if grouped_query_attention:
        total *= shape.num_key_value_heads / shape.num_attention_heads
    return total


def estimate_attention_bytes(shape: ModelShape, precision: PrecisionTriple,
                             context: int) -> float:
    bytes_per_param = precision.weight_bpw / 8
    lm_head_bytes = precision.lm_head_bpw / 8
    hidden = shape.hidden_size
    heads = shape.num_attention_heads
    head_dim = hidden / heads

    attention_input = bytes_per_param * (context * hidden)
    q = bytes_per_param * context * head_dim * heads
    k = bytes_per_param * context * head_dim * shape.num_key_value_heads
    v = bytes_per_param * context * head_dim * shape.num_key_value_heads

    softmax_output = lm_head_bytes * (heads * context)
    # dropout masks are counted one unit per element
    softmax_dropout_mask = float(heads * context)
    dropout_output = lm_head_bytes * (heads * context)

    out_proj_input = lm_head_bytes * (context * heads) * head_dim
    attention_dropout = float(context * hidden)

    return (attention_input + q + k + softmax_output + v + out_proj_input +
            softmax_dropout_mask + dropout_output + attention_dropout)


def estimate_mlp_bytes(shape: ModelShape, precision: PrecisionTriple,
                       context: int) -> float:
    bytes_per_param = precision.weight_bpw / 8
    mlp_input = bytes_per_param * (context * shape.hidden_size)
    activation_input = bytes_per_param * (context * shape.intermediate_size)
    down_proj_input = bytes_per_param * (context * shape.intermediate_size)
    dropout_mask = float(context * shape.hidden_size)
    return mlp_input + activation_input + down_proj_input + dropout_mask


def estimate_activation_bytes(shape: ModelShape, precision: PrecisionTriple,
                              context: int) -> float:
    layer_norms = (precision.weight_bpw / 8) * (context * shape.hidden_size * 2)
    return (estimate_attention_bytes(shape, precision, context) +
            estimate_mlp_bytes(shape, precision, context) + layer_norms)


class MemoryModel:
    """Closed-form VRAM estimate for running a model at inference time.

    ``cuda_overhead_bytes`` is a flat runtime allocation charged once per
    GPU. ``lm_head_threshold`` is the weight BPW above which the LM head is
    assumed to be stored at 8 bits instead of 6.
    """

    def __init__(self,
                 cuda_overhead_bytes: int = CUDA_OVERHEAD_BYTES,
                 lm_head_threshold: float = LM_HEAD_THRESHOLD_BPW) -> None:
        self.cuda_overhead_bytes = cuda_overhead_bytes
        self.lm_head_threshold = lm_head_threshold

    def precision(self, weight_bpw: float, kv_level) -> PrecisionTriple:
        return PrecisionTriple.derive(weight_bpw, kv_level,
                                      lm_head_threshold=self.lm_head_threshold)

    def breakdown(self, shape: ModelShape, precision: PrecisionTriple,
                  context: int, num_gpus: int = 1,
                  grouped_query_attention: bool = True) -> MemoryBuckets:
        return MemoryBuckets(
            overhead_bytes=float(self.cuda_overhead_bytes * num_gpus),
            parameter_bytes=shape.num_params * 1e9 * (precision.weight_bpw / 8),
            activation_bytes=estimate_activation_bytes(shape, precision,
                                                       context),
            output_bytes=(precision.lm_head_bpw / 8) *
            (context * shape.vocab_size),
            kv_cache_bytes=estimate_kv_cache_bytes(shape, precision, context,
                                                   grouped_query_attention),
        )

    def estimate(self, shape: ModelShape, precision: PrecisionTriple,
                 context: int, num_gpus: int = 1,
                 grouped_query_attention: bool = True) -> float:
        """Return the estimate in GB (2**30 units)."""

        buckets = self.breakdown(shape, precision, context, num_gpus,
                                 grouped_query_attention)
        return to_gigabytes(buckets.total_bytes)
