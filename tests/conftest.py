from __future__ import annotations

import json

import httpx
import pytest

from vram_estimator.estimator import VRAMEstimator
from vram_estimator.model_shapes import ModelShape
from vram_estimator.providers import ModelConfigProvider

REMOTE_MODEL_ID = "meta-llama/Meta-Llama-3-8B"
LOCAL_MODEL_ID = "llama3:8b"

LLAMA3_8B = ModelShape(
    num_params=8,
    max_context_length=131072,
    num_hidden_layers=32,
    hidden_size=4096,
    num_attention_heads=32,
    num_key_value_heads=8,
    intermediate_size=14336,
    vocab_size=128256,
)

LLAMA3_CONFIG = {
    "architectures": ["LlamaForCausalLM"],
    "model_type": "llama",
    "hidden_size": 4096,
    "intermediate_size": 14336,
    "max_position_embeddings": 8192,
    "num_attention_heads": 32,
    "num_hidden_layers": 32,
    "num_key_value_heads": 8,
    "rms_norm_eps": 1e-05,
    "rope_theta": 500000.0,
    "vocab_size": 128256,
}

LLAMA3_INDEX = {
    "metadata": {"total_size": 16060522496},
    "weight_map": {"lm_head.weight": "model-00004-of-00004.safetensors"},
}

OLLAMA_SHOW = {
    "details": {
        "parameter_size": "8.0B",
        "quantization_level": "Q4_K_M",
        "family": "llama",
    },
    "model_info": {
        "general.architecture": "llama",
        "general.parameter_count": 8030261248,
        "llama.block_count": 32,
        "llama.context_length": 8192,
        "llama.embedding_length": 4096,
        "llama.feed_forward_length": 14336,
        "llama.attention.head_count": 32,
        "llama.attention.head_count_kv": 8,
        "llama.vocab_size": 128256,
    },
}


class StaticSource:
    """Model source returning fixed shapes and recording lookups."""

    def __init__(self, shapes: dict[str, ModelShape]):
        self.shapes = dict(shapes)
        self.calls: list[tuple[str, str | None]] = []

    def fetch_shape(self, model_id: str,
                    access_token: str | None = None) -> ModelShape:
        self.calls.append((model_id, access_token))
        return self.shapes[model_id]


class HubRecorder:
    """httpx handler serving Hub documents and counting requests per path."""

    def __init__(self, documents: dict[str, object], status_code: int = 200):
        self.documents = documents
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        filename = request.url.path.rsplit("/", 1)[-1]
        if self.status_code != 200 or filename not in self.documents:
            return httpx.Response(self.status_code if self.status_code != 200
                                  else 404)
        body = self.documents[filename]
        if isinstance(body, (bytes, str)):
            return httpx.Response(200, content=body)
        return httpx.Response(200, content=json.dumps(body).encode())

    def count(self, filename: str) -> int:
        return sum(1 for request in self.requests
                   if request.url.path.endswith("/" + filename))


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--live-model",
        action="store",
        default=None,
        dest="live_model",
        help="Hugging Face repo to resolve against the real Hub (enables network tests)",
    )
    parser.addoption(
        "--live-token",
        action="store",
        default=None,
        dest="live_token",
        help="Access token for gated repositories",
    )
    parser.addoption(
        "--live-report",
        action="store_true",
        default=False,
        dest="live_report",
        help="Print the resolved shape and estimates even when the test passes",
    )


@pytest.fixture
def live_model(request: pytest.FixtureRequest) -> str:
    model = request.config.getoption("live_model")
    if not model:
        pytest.skip("pass --live-model to run network tests")
    return model


@pytest.fixture
def live_token(request: pytest.FixtureRequest) -> str | None:
    return request.config.getoption("live_token")


@pytest.fixture
def live_report_enabled(request: pytest.FixtureRequest) -> bool:
    return bool(request.config.getoption("live_report"))


def pytest_configure(config: pytest.Config) -> None:
    setattr(config, "live_reports", [])


def pytest_terminal_summary(terminalreporter, exitstatus, config: pytest.Config) -> None:
    reports = getattr(config, "live_reports", None)
    if reports:
        terminalreporter.section("live estimates")
        for header, lines in reports:
            terminalreporter.write_line(header)
            for line in lines:
                terminalreporter.write_line("  " + line)


@pytest.fixture
def remote_source() -> StaticSource:
    return StaticSource({REMOTE_MODEL_ID: LLAMA3_8B})


@pytest.fixture
def local_source() -> StaticSource:
    shape = ModelShape(
        num_params=8.030261248,
        max_context_length=8192,
        num_hidden_layers=0,
        hidden_size=4096,
        num_attention_heads=32,
        num_key_value_heads=8,
        intermediate_size=14336,
        vocab_size=128256,
        quantisation="Q4_K_M",
    )
    return StaticSource({LOCAL_MODEL_ID: shape})


@pytest.fixture
def provider(remote_source: StaticSource,
             local_source: StaticSource) -> ModelConfigProvider:
    return ModelConfigProvider(remote=remote_source, local=local_source)


@pytest.fixture
def estimator(provider: ModelConfigProvider) -> VRAMEstimator:
    return VRAMEstimator(provider)
