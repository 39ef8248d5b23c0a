"""Architectural shape of a transformer, as the memory model sees it."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from typing import Mapping
from typing import Sequence
from typing import Set

from transformers import PretrainedConfig

from .errors import InvariantViolation


@dataclass(frozen=True)
class ModelShape:
    num_params: float  # billions
    max_context_length: int
    num_hidden_layers: int
    hidden_size: int
    num_attention_heads: int
    num_key_value_heads: int
    intermediate_size: int
    vocab_size: int
    # storage quantisation reported by a local server, if any
    quantisation: str | None = None

    def problems(self) -> list[str]:
        found = []
        if self.hidden_size <= 0:
            found.append("hidden_size must be positive")
        if self.num_attention_heads <= 0:
            found.append("num_attention_heads must be positive")
        elif self.num_key_value_heads <= 0:
            found.append("num_key_value_heads must be positive")
        elif self.num_key_value_heads > self.num_attention_heads:
            found.append("num_key_value_heads exceeds num_attention_heads")
        if self.num_hidden_layers <= 0:
            found.append("num_hidden_layers is unknown")
        return found

    def validate(self, model_id: str) -> "ModelShape":
        """Raise :class:`InvariantViolation` unless the shape is usable."""

        found = self.problems()
        if found:
            raise InvariantViolation(model_id, found)
        return self


_NESTED_CONFIG_KEYS: Sequence[str] = (
    "text_config",
    "language_model_config",
    "llm_config",
    "base_model_config",
    "model_config",
    "decoder",
)

_HIDDEN_SIZE_KEYS = ("hidden_size", "n_embd", "model_dim", "d_model")
_LAYER_KEYS = ("num_hidden_layers", "n_layer", "num_layers", "decoder_layers",
               "num_transformer_layers")
_HEAD_KEYS = ("num_attention_heads", "n_head", "decoder_attention_heads",
              "num_query_heads")
_KV_HEAD_KEYS = ("num_key_value_heads", "num_kv_heads", "n_head_kv",
                 "multi_query_group_num")
_INTERMEDIATE_KEYS = ("intermediate_size", "ffn_dim", "n_inner", "d_ff",
                      "ffn_hidden_size")
_CONTEXT_KEYS = ("max_position_embeddings", "n_positions",
                 "max_sequence_length", "max_context_length", "seq_length",
                 "n_ctx")
_VOCAB_KEYS = ("vocab_size", "padded_vocab_size")


def _lookup(node: Any, name: str) -> Any:
    if isinstance(node, Mapping):
        return node.get(name)
    return getattr(node, name, None)


def _resolve_config_attr(config: PretrainedConfig | Mapping[str, Any],
                         names: Sequence[str],
                         visited: Set[int] | None = None) -> int | None:
    if visited is None:
        visited = set()
    ident = id(config)
    if ident in visited:
        return None
    visited.add(ident)

    for name in names:
        value = _lookup(config, name)
        if value is not None:
            return value

    # multimodal wrappers keep the language model under a nested config
    for nested_key in _NESTED_CONFIG_KEYS:
        nested = _lookup(config, nested_key)
        if nested is None or isinstance(nested, (str, int, float, bool)):
            continue
        result = _resolve_config_attr(nested, names, visited)
        if result is not None:
            return result
    return None


def _to_int(value: Any) -> int:
    try:
        if isinstance(value, (list, tuple)):
            # per-layer counts on some architectures
            value = max(value) if value else None
        return int(value) if value is not None else 0
    except (TypeError, ValueError):
        return 0


def _int_attr(config: PretrainedConfig, names: Sequence[str]) -> int:
    return _to_int(_resolve_config_attr(config, names))


def shape_from_config(config: PretrainedConfig, num_params: float) -> ModelShape:
    """Build a shape from a Hugging Face config.

    Fields that cannot be found are left at zero so validation can report
    all of them at once. A missing KV head count means plain multi-head
    attention.
    """

    heads = _int_attr(config, _HEAD_KEYS)
    kv_heads = _int_attr(config, _KV_HEAD_KEYS) or heads
    hidden = _int_attr(config, _HIDDEN_SIZE_KEYS)
    intermediate = _int_attr(config, _INTERMEDIATE_KEYS)
    if intermediate == 0 and hidden:
        # fall back to GPT-like 4x width
        intermediate = hidden * 4
    return ModelShape(
        num_params=num_params,
        max_context_length=_int_attr(config, _CONTEXT_KEYS),
        num_hidden_layers=_int_attr(config, _LAYER_KEYS),
        hidden_size=hidden,
        num_attention_heads=heads,
        num_key_value_heads=kv_heads,
        intermediate_size=intermediate,
        vocab_size=_int_attr(config, _VOCAB_KEYS),
    )


def shape_from_ollama(payload: Mapping[str, Any]) -> ModelShape:
    """Read a shape from an Ollama ``/api/show`` response.

    Keys are prefixed with ``general.architecture``; anything the server
    does not report stays zero, except the KV head count, which falls back
    to the attention head count as on the Hub path.
    """

    model_info = payload.get("model_info") or {}
    details = payload.get("details") or {}
    arch = model_info.get("general.architecture") or "llama"

    def field(name: str) -> int:
        return _to_int(model_info.get(f"{arch}.{name}"))

    heads = field("attention.head_count")
    vocab = field("vocab_size")
    if vocab == 0:
        tokens = model_info.get("tokenizer.ggml.tokens")
        if isinstance(tokens, list):
            vocab = len(tokens)

    return ModelShape(
        num_params=_to_int(model_info.get("general.parameter_count")) / 1e9,
        max_context_length=field("context_length"),
        num_hidden_layers=field("block_count"),
        hidden_size=field("embedding_length"),
        num_attention_heads=heads,
        num_key_value_heads=field("attention.head_count_kv") or heads,
        intermediate_size=field("feed_forward_length"),
        vocab_size=vocab,
        quantisation=details.get("quantization_level") or None,
    )
