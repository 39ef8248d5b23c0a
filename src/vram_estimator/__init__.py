"""VRAM estimator package."""

from .errors import ConfigFetchError
from .errors import ConfigParseError
from .errors import InvalidQuantisationError
from .errors import InvariantViolation
from .errors import SearchExhaustedError
from .errors import VRAMEstimatorError
from .estimator import SearchResult
from .estimator import VRAMEstimation
from .estimator import VRAMEstimator
from .memory_model import MemoryModel
from .model_shapes import ModelShape
from .providers import ModelConfigProvider
from .quantisation import KVCacheQuantisation
from .quantisation import PrecisionTriple
from .quantisation import resolve_bpw

__all__ = [
    "ConfigFetchError",
    "ConfigParseError",
    "InvalidQuantisationError",
    "InvariantViolation",
    "KVCacheQuantisation",
    "MemoryModel",
    "ModelConfigProvider",
    "ModelShape",
    "PrecisionTriple",
    "SearchExhaustedError",
    "SearchResult",
    "VRAMEstimation",
    "VRAMEstimator",
    "VRAMEstimatorError",
    "resolve_bpw",
]
