from __future__ import annotations

import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest

from conftest import LLAMA3_8B
from conftest import LLAMA3_CONFIG
from conftest import LLAMA3_INDEX
from conftest import LOCAL_MODEL_ID
from conftest import OLLAMA_SHOW
from conftest import REMOTE_MODEL_ID
from conftest import HubRecorder
from conftest import StaticSource
from vram_estimator.errors import ConfigFetchError
from vram_estimator.errors import ConfigParseError
from vram_estimator.providers import HuggingFaceConfigSource
from vram_estimator.providers import ModelConfigProvider
from vram_estimator.providers import OllamaModelSource
from vram_estimator.providers import is_remote_model

HUB_DOCUMENTS = {
    "config.json": LLAMA3_CONFIG,
    "model.safetensors.index.json": LLAMA3_INDEX,
}


def _hub_source(tmp_path, recorder: HubRecorder) -> HuggingFaceConfigSource:
    client = httpx.Client(transport=httpx.MockTransport(recorder))
    return HuggingFaceConfigSource(cache_dir=tmp_path, client=client)


def test_routing():
    assert is_remote_model("meta-llama/Meta-Llama-3-8B")
    assert not is_remote_model("llama3:8b")
    assert not is_remote_model("mistral")


def test_provider_routes_by_identifier(provider, remote_source, local_source):
    assert provider.resolve(REMOTE_MODEL_ID) is LLAMA3_8B
    assert provider.resolve(LOCAL_MODEL_ID).quantisation == "Q4_K_M"
    assert remote_source.calls == [(REMOTE_MODEL_ID, None)]
    assert local_source.calls == [(LOCAL_MODEL_ID, None)]


def test_provider_memoises(provider, remote_source):
    first = provider.resolve(REMOTE_MODEL_ID, "token")
    second = provider.resolve(REMOTE_MODEL_ID, "token")
    assert first is second
    assert len(remote_source.calls) == 1
    assert provider.cached(REMOTE_MODEL_ID) is first
    assert provider.cached("other/model") is None


def test_provider_does_not_cache_failures(local_source):
    source = StaticSource({})
    provider = ModelConfigProvider(remote=source, local=local_source)
    with pytest.raises(KeyError):
        provider.resolve("missing/model")
    assert provider.cached("missing/model") is None


class SlowSource(StaticSource):
    def fetch_shape(self, model_id, access_token=None):
        time.sleep(0.05)
        return super().fetch_shape(model_id, access_token)


def test_concurrent_resolution_fetches_once(local_source):
    source = SlowSource({REMOTE_MODEL_ID: LLAMA3_8B})
    provider = ModelConfigProvider(remote=source, local=local_source)
    start = threading.Barrier(8)

    def resolve(_):
        start.wait()
        return provider.resolve(REMOTE_MODEL_ID)

    with ThreadPoolExecutor(max_workers=8) as pool:
        shapes = list(pool.map(resolve, range(8)))

    assert all(shape is LLAMA3_8B for shape in shapes)
    assert len(source.calls) == 1


def test_hub_source_downloads_and_mirrors(tmp_path):
    recorder = HubRecorder(HUB_DOCUMENTS)
    shape = _hub_source(tmp_path, recorder).fetch_shape(REMOTE_MODEL_ID)

    assert shape.num_params == pytest.approx(8.030261248)
    assert shape.max_context_length == 8192
    assert shape.num_hidden_layers == 32
    assert shape.num_key_value_heads == 8
    assert shape.vocab_size == 128256

    model_dir = tmp_path / "meta-llama" / "Meta-Llama-3-8B"
    assert json.loads((model_dir / "config.json").read_text()) == LLAMA3_CONFIG
    assert json.loads((model_dir / "model-index.json").read_text()) == LLAMA3_INDEX

    urls = [str(request.url) for request in recorder.requests]
    assert urls == [
        "https://huggingface.co/meta-llama/Meta-Llama-3-8B/raw/main/config.json",
        "https://huggingface.co/meta-llama/Meta-Llama-3-8B/raw/main/"
        "model.safetensors.index.json",
    ]


def test_hub_source_reuses_disk_cache(tmp_path):
    recorder = HubRecorder(HUB_DOCUMENTS)
    ModelConfigProvider(remote=_hub_source(tmp_path, recorder)).resolve(
        REMOTE_MODEL_ID)
    assert recorder.count("config.json") == 1
    assert recorder.count("model.safetensors.index.json") == 1

    # a fresh provider finds the files on disk
    fresh = HubRecorder({})
    shape = ModelConfigProvider(remote=_hub_source(tmp_path, fresh)).resolve(
        REMOTE_MODEL_ID)
    assert shape.hidden_size == 4096
    assert fresh.requests == []


def test_hub_source_sends_bearer_token(tmp_path):
    recorder = HubRecorder(HUB_DOCUMENTS)
    _hub_source(tmp_path, recorder).fetch_shape(REMOTE_MODEL_ID, "hf_secret")
    assert all(request.headers["Authorization"] == "Bearer hf_secret"
               for request in recorder.requests)


def test_hub_source_without_token_sends_no_auth(tmp_path):
    recorder = HubRecorder(HUB_DOCUMENTS)
    _hub_source(tmp_path, recorder).fetch_shape(REMOTE_MODEL_ID)
    assert all("Authorization" not in request.headers
               for request in recorder.requests)


@pytest.mark.parametrize("status_code", [401, 404, 500])
def test_hub_source_bad_status(tmp_path, status_code):
    recorder = HubRecorder(HUB_DOCUMENTS, status_code=status_code)
    with pytest.raises(ConfigFetchError) as excinfo:
        _hub_source(tmp_path, recorder).fetch_shape(REMOTE_MODEL_ID)
    assert str(status_code) in str(excinfo.value)
    assert not (tmp_path / "meta-llama" / "Meta-Llama-3-8B" / "config.json").exists()


def test_hub_source_missing_index(tmp_path):
    recorder = HubRecorder({"config.json": LLAMA3_CONFIG})
    with pytest.raises(ConfigFetchError):
        _hub_source(tmp_path, recorder).fetch_shape(REMOTE_MODEL_ID)


def test_hub_source_transport_error(tmp_path):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    source = HuggingFaceConfigSource(cache_dir=tmp_path, client=client)
    with pytest.raises(ConfigFetchError) as excinfo:
        source.fetch_shape(REMOTE_MODEL_ID)
    assert "connection refused" in str(excinfo.value)


def test_hub_source_malformed_config(tmp_path):
    recorder = HubRecorder({"config.json": b"{not json",
                            "model.safetensors.index.json": LLAMA3_INDEX})
    with pytest.raises(ConfigParseError):
        _hub_source(tmp_path, recorder).fetch_shape(REMOTE_MODEL_ID)


@pytest.mark.parametrize("index", [
    {"weight_map": {}},
    {"metadata": {}},
    {"metadata": {"total_size": "16060522496"}},
    ["not", "an", "object"],
])
def test_hub_source_index_without_total_size(tmp_path, index):
    recorder = HubRecorder({"config.json": LLAMA3_CONFIG,
                            "model.safetensors.index.json": index})
    with pytest.raises(ConfigParseError):
        _hub_source(tmp_path, recorder).fetch_shape(REMOTE_MODEL_ID)


@pytest.mark.parametrize("model_id", ["../etc", "owner//name", "owner/./name"])
def test_hub_source_rejects_unsafe_ids(tmp_path, model_id):
    recorder = HubRecorder(HUB_DOCUMENTS)
    with pytest.raises(ConfigFetchError):
        _hub_source(tmp_path, recorder).fetch_shape(model_id)
    assert recorder.requests == []


def test_ollama_source():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=OLLAMA_SHOW)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    source = OllamaModelSource(host="http://gpu-box:11434/", client=client)
    shape = source.fetch_shape(LOCAL_MODEL_ID)

    assert shape.num_hidden_layers == 32
    assert shape.quantisation == "Q4_K_M"
    assert str(seen[0].url) == "http://gpu-box:11434/api/show"
    assert seen[0].method == "POST"
    assert json.loads(seen[0].content)["name"] == LOCAL_MODEL_ID


def test_ollama_source_unknown_model():
    def handler(request):
        return httpx.Response(404, json={"error": "model not found"})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    with pytest.raises(ConfigFetchError) as excinfo:
        OllamaModelSource(client=client).fetch_shape("nope:latest")
    assert "404" in str(excinfo.value)


def test_ollama_source_unreachable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    with pytest.raises(ConfigFetchError):
        OllamaModelSource(client=client).fetch_shape(LOCAL_MODEL_ID)


def test_ollama_source_missing_block_count(caplog):
    payload = json.loads(json.dumps(OLLAMA_SHOW))
    del payload["model_info"]["llama.block_count"]

    def handler(request):
        return httpx.Response(200, json=payload)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    with caplog.at_level("WARNING", logger="vram_estimator.providers"):
        shape = OllamaModelSource(client=client).fetch_shape(LOCAL_MODEL_ID)
    assert shape.num_hidden_layers == 0
    assert "block count" in caplog.text


OPENELM_CONFIG = {
    "model_type": "openelm",
    "model_dim": 1280,
    "num_transformer_layers": 16,
    "num_query_heads": [12, 12, 12, 12, 12, 16, 16, 16, 16, 16, 16, 16, 20, 20,
                        20, 20],
    "num_kv_heads": [3, 3, 3, 3, 3, 4, 4, 4, 4, 4, 4, 4, 5, 5, 5, 5],
    "max_context_length": 2048,
    "vocab_size": 32000,
}


def test_hub_source_per_layer_head_counts(tmp_path):
    recorder = HubRecorder({"config.json": OPENELM_CONFIG,
                            "model.safetensors.index.json": LLAMA3_INDEX})
    shape = _hub_source(tmp_path, recorder).fetch_shape("apple/OpenELM-270M")
    assert shape.num_attention_heads == 20
    assert shape.num_key_value_heads == 5
    assert shape.max_context_length == 2048
    assert shape.num_hidden_layers == 16


def test_hub_source_interrupted_write_leaves_no_mirror(tmp_path, monkeypatch):
    def fail_replace(self, target):
        raise OSError("disk full")

    monkeypatch.setattr("pathlib.Path.replace", fail_replace)
    recorder = HubRecorder(HUB_DOCUMENTS)
    with pytest.raises(OSError):
        _hub_source(tmp_path, recorder).fetch_shape(REMOTE_MODEL_ID)
    monkeypatch.undo()

    model_dir = tmp_path / "meta-llama" / "Meta-Llama-3-8B"
    assert list(model_dir.iterdir()) == []

    # the next attempt downloads again instead of reading a truncated file
    shape = _hub_source(tmp_path, recorder).fetch_shape(REMOTE_MODEL_ID)
    assert shape.hidden_size == 4096
    assert recorder.count("config.json") == 2


def test_provider_drops_key_locks_once_resolved(provider):
    for model_id in (REMOTE_MODEL_ID, LOCAL_MODEL_ID):
        provider.resolve(model_id)
    assert provider._locks == {}
