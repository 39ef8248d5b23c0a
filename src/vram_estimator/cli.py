"""Console entry point for the VRAM estimator."""
from __future__ import annotations

import argparse
import json
import logging
import sys

from .config import load_settings
from .errors import VRAMEstimatorError
from .estimator import VRAMEstimator
from .memory_model import MemoryModel
from .providers import ModelConfigProvider
from .quantisation import KVCacheQuantisation
from .reports import generate_quant_table

logger = logging.getLogger(__name__)

MODES = ("vram", "context", "bpw", "all", "table")


def parse_context_size(value: str) -> int:
    """Parse ``"8192"``, ``"32k"`` or ``"2m"`` (binary multiples)."""

    text = value.strip().lower()
    multiplier = 1
    if text.endswith("k"):
        multiplier = 1024
        text = text[:-1]
    elif text.endswith("m"):
        multiplier = 1024 * 1024
        text = text[:-1]
    try:
        number = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"invalid context size: {value}") from None
    if number < 0:
        raise argparse.ArgumentTypeError(f"invalid context size: {value}")
    return number * multiplier


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=("Estimate the VRAM needed to run a language model at a "
                     "given quantisation and context length."))
    parser.add_argument("model",
                        help=("Hugging Face repo (owner/name) or Ollama model "
                              "(name:tag)"))
    parser.add_argument("--mode",
                        choices=MODES,
                        default="vram",
                        help=("vram: estimate usage; context: largest context "
                              "for --budget; bpw: best quantisation for "
                              "--budget; all: all three; table: quant x "
                              "context grid (default: vram)"))
    parser.add_argument("--quant",
                        "--bpw",
                        dest="quant",
                        default=None,
                        help=("Quantisation name (e.g. Q4_K_M) or bits per "
                              "weight (e.g. 4.85); defaults to what a local "
                              "server reports"))
    parser.add_argument("--kv-cache",
                        type=KVCacheQuantisation.parse,
                        default=KVCacheQuantisation.FP16,
                        help="KV cache quantisation: fp16, q8_0 or q4_0")
    parser.add_argument("--budget",
                        "--fits",
                        dest="budget",
                        type=float,
                        default=None,
                        help="Available VRAM in GB")
    parser.add_argument("--context",
                        type=parse_context_size,
                        default=0,
                        help=("Context length, e.g. 8192 or 32k (default: "
                              "model maximum; table mode: 64k)"))
    parser.add_argument("--catalogue",
                        choices=("gguf", "exl2"),
                        default="gguf",
                        help="Quantisation family for --mode bpw")
    parser.add_argument("--token",
                        default=None,
                        help="Hugging Face access token (default: $HF_TOKEN)")
    parser.add_argument("--layers",
                        type=int,
                        default=None,
                        help="Layer count for models whose server omits it")
    parser.add_argument("--gpus",
                        type=int,
                        default=1,
                        help="Number of GPUs the model is split across")
    parser.add_argument("--json",
                        action="store_true",
                        help="Emit results as JSON instead of text")
    parser.add_argument("--log-level",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        default="WARNING")
    return parser


def _require_budget(parser: argparse.ArgumentParser,
                    parsed: argparse.Namespace) -> float:
    if parsed.budget is None or parsed.budget <= 0:
        parser.error(f"--budget is required for --mode {parsed.mode}")
    return parsed.budget


def _run(parser: argparse.ArgumentParser, parsed: argparse.Namespace,
         estimator: VRAMEstimator, token: str | None) -> dict[str, object] | str:
    model = parsed.model
    if parsed.mode == "vram":
        vram = estimator.estimate_vram(model, parsed.quant, parsed.context,
                                       parsed.kv_cache, token)
        if parsed.json:
            return {"model": model, "vram_gb": vram}
        return f"Estimated VRAM usage: {vram:.2f} GB"

    if parsed.mode == "table":
        table = generate_quant_table(estimator, model, parsed.budget or 0.0,
                                     token, top_context=parsed.context or 65536)
        return table.as_dict() if parsed.json else table.render_table()

    budget = _require_budget(parser, parsed)
    if parsed.mode == "context":
        context = estimator.max_context_for_budget(model, budget, parsed.quant,
                                                   parsed.kv_cache, token)
        if parsed.json:
            return {"model": model, "budget_gb": budget, "max_context": context}
        return f"Maximum context for {budget:.2f} GB: {context}"

    if parsed.mode == "bpw":
        quant = estimator.best_quantisation_for_budget(model, budget,
                                                       parsed.context,
                                                       parsed.kv_cache,
                                                       parsed.catalogue, token)
        if parsed.json:
            return {"model": model, "budget_gb": budget, "quantisation": quant}
        return f"Best {parsed.catalogue.upper()} quantisation for {budget:.2f} GB: {quant}"

    estimation = estimator.estimate_all(model, budget, parsed.quant,
                                        parsed.context, parsed.kv_cache, token)
    return estimation.as_dict() if parsed.json else estimation.render_summary()


def main(args: list[str] | None = None) -> int:
    parser = _build_arg_parser()
    parsed = parser.parse_args(args)

    logging.basicConfig(
        level=getattr(logging, parsed.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    settings = load_settings()
    token = parsed.token or settings.hf_token

    with ModelConfigProvider.from_settings(settings) as provider:
        estimator = VRAMEstimator(provider,
                                  MemoryModel(),
                                  num_gpus=parsed.gpus,
                                  num_hidden_layers=parsed.layers)
        try:
            output = _run(parser, parsed, estimator, token)
        except VRAMEstimatorError as exc:
            logger.debug("Estimation failed", exc_info=True)
            print(f"Error: {exc}", file=sys.stderr)
            return 1

    if isinstance(output, dict):
        print(json.dumps(output, indent=2))
    else:
        print(output)
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
