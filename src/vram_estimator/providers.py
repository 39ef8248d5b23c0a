"""Resolve model identifiers into :class:`ModelShape` instances.

Two sources are supported: repositories on the Hugging Face Hub, whose
``config.json`` and safetensors index are downloaded once and mirrored on
disk, and models served by a local Ollama instance, whose ``/api/show``
metadata already carries the shape fields.
"""
from __future__ import annotations

import json
import logging
import tempfile
import threading
from pathlib import Path
from typing import Any
from typing import Protocol

import httpx
from transformers import PretrainedConfig

from .config import DEFAULT_CACHE_DIR
from .config import DEFAULT_OLLAMA_HOST
from .config import DEFAULT_TIMEOUT
from .config import Settings
from .errors import ConfigFetchError
from .errors import ConfigParseError
from .model_shapes import ModelShape
from .model_shapes import shape_from_config
from .model_shapes import shape_from_ollama

logger = logging.getLogger(__name__)

HF_BASE_URL = "https://huggingface.co"
CONFIG_FILENAME = "config.json"
INDEX_FILENAME = "model-index.json"
REMOTE_INDEX_FILENAME = "model.safetensors.index.json"

# The index reports serialized bytes; parameters are assumed to be stored at
# two bytes each (fp16/bf16 checkpoints).
BYTES_PER_STORED_PARAM = 2


def is_remote_model(model_id: str) -> bool:
    """Hub repositories are ``owner/name``; anything else is a local model."""
    return "/" in model_id


class ModelConfigSource(Protocol):
    def fetch_shape(self, model_id: str,
                    access_token: str | None = None) -> ModelShape:
        ...


def _parse_json(raw: bytes | str, source: str) -> dict[str, Any]:
    try:
        document = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ConfigParseError(source, str(exc)) from exc
    if not isinstance(document, dict):
        raise ConfigParseError(source,
                               f"expected an object, got {type(document).__name__}")
    return document


class HuggingFaceConfigSource:
    """Download ``config.json`` and the safetensors index for a Hub repo.

    Files are stored raw under ``<cache_dir>/<model_id>/`` and reused forever
    once present.
    """

    def __init__(self,
                 cache_dir: str | Path = DEFAULT_CACHE_DIR,
                 client: httpx.Client | None = None,
                 base_url: str = HF_BASE_URL,
                 timeout: float = DEFAULT_TIMEOUT) -> None:
        self.cache_dir = Path(cache_dir)
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout,
                                              follow_redirects=True)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def model_dir(self, model_id: str) -> Path:
        parts = model_id.split("/")
        if any(part in ("", ".", "..") for part in parts):
            raise ConfigFetchError(model_id, "invalid repository id")
        return self.cache_dir.joinpath(*parts)

    def _url(self, model_id: str, filename: str) -> str:
        return f"{self.base_url}/{model_id}/raw/main/{filename}"

    def _download(self, url: str, path: Path, headers: dict[str, str]) -> None:
        if path.exists():
            logger.debug("Using cached %s", path)
            return

        logger.debug("Downloading %s", url)
        try:
            response = self._client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            raise ConfigFetchError(url, str(exc)) from exc
        if response.status_code != 200:
            raise ConfigFetchError(
                url, f"bad status: {response.status_code} {response.reason_phrase}")

        path.parent.mkdir(parents=True, exist_ok=True)
        # readers never see a partially written file
        with tempfile.NamedTemporaryFile(dir=path.parent, prefix=path.name,
                                         suffix=".part", delete=False) as handle:
            partial = Path(handle.name)
        try:
            partial.write_bytes(response.content)
            partial.replace(path)
        except OSError:
            partial.unlink(missing_ok=True)
            raise

    def fetch_shape(self, model_id: str,
                    access_token: str | None = None) -> ModelShape:
        base_dir = self.model_dir(model_id)
        config_path = base_dir / CONFIG_FILENAME
        index_path = base_dir / INDEX_FILENAME

        headers = {}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        self._download(self._url(model_id, CONFIG_FILENAME), config_path,
                       headers)
        self._download(self._url(model_id, REMOTE_INDEX_FILENAME), index_path,
                       headers)

        config_doc = _parse_json(config_path.read_bytes(), str(config_path))
        index_doc = _parse_json(index_path.read_bytes(), str(index_path))

        metadata = index_doc.get("metadata")
        total_size = metadata.get("total_size") if isinstance(metadata, dict) else None
        if not isinstance(total_size, (int, float)) or isinstance(total_size, bool):
            raise ConfigParseError(str(index_path),
                                   "missing numeric metadata.total_size")

        try:
            config = PretrainedConfig.from_dict(config_doc)
        except (TypeError, ValueError) as exc:
            raise ConfigParseError(str(config_path), str(exc)) from exc

        num_params = total_size / BYTES_PER_STORED_PARAM / 1e9
        return shape_from_config(config, num_params)


class OllamaModelSource:
    """Read shape fields from a running Ollama server's ``/api/show``."""

    def __init__(self,
                 host: str = DEFAULT_OLLAMA_HOST,
                 client: httpx.Client | None = None,
                 timeout: float = DEFAULT_TIMEOUT) -> None:
        self.host = host.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def fetch_shape(self, model_id: str,
                    access_token: str | None = None) -> ModelShape:
        url = f"{self.host}/api/show"
        logger.debug("Fetching model info for %s from %s", model_id, url)
        try:
            response = self._client.post(url, json={"model": model_id,
                                                    "name": model_id})
        except httpx.HTTPError as exc:
            raise ConfigFetchError(url, str(exc)) from exc
        if response.status_code != 200:
            raise ConfigFetchError(
                url, f"ollama API returned non-OK status: {response.status_code}")

        shape = shape_from_ollama(_parse_json(response.content, url))
        if shape.num_hidden_layers == 0:
            logger.warning("Ollama did not report a block count for %s",
                           model_id)
        return shape


class ModelConfigProvider:
    """Resolve and memoise model shapes.

    Each model id is resolved at most once per provider, even when several
    threads miss the cache at the same time.
    """

    def __init__(self,
                 remote: ModelConfigSource | None = None,
                 local: ModelConfigSource | None = None) -> None:
        self.remote = remote if remote is not None else HuggingFaceConfigSource()
        self.local = local if local is not None else OllamaModelSource()
        self._cache: dict[str, ModelShape] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ModelConfigProvider":
        remote = HuggingFaceConfigSource(cache_dir=settings.cache_dir,
                                         timeout=settings.timeout)
        local = OllamaModelSource(host=settings.ollama_host,
                                  timeout=settings.timeout)
        return cls(remote=remote, local=local)

    def close(self) -> None:
        for source in (self.remote, self.local):
            close = getattr(source, "close", None)
            if close is not None:
                close()

    def __enter__(self) -> "ModelConfigProvider":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def cached(self, model_id: str) -> ModelShape | None:
        return self._cache.get(model_id)

    def _lock_for(self, model_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(model_id)
            if lock is None:
                lock = self._locks[model_id] = threading.Lock()
            return lock

    def resolve(self, model_id: str,
                access_token: str | None = None) -> ModelShape:
        shape = self._cache.get(model_id)
        if shape is not None:
            return shape

        with self._lock_for(model_id):
            # another thread may have finished while we waited
            shape = self._cache.get(model_id)
            if shape is not None:
                return shape
            source = self.remote if is_remote_model(model_id) else self.local
            shape = source.fetch_shape(model_id, access_token)
            self._cache[model_id] = shape
            # waiters still hold this lock; later callers hit the cache
            with self._guard:
                self._locks.pop(model_id, None)
            logger.debug("Resolved %s: %s", model_id, shape)
            return shape
