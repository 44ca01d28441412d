"""Engine CLI orchestration utilities."""

from .runner import (
    EngineNotFoundError,
    EngineResult,
    EngineRunner,
    EngineRunnerError,
    EngineSessionNotFoundError,
    FakeEngineRunner,
    SpawnTimeoutError,
    build_engine_args,
)
from .utils import estimate_tokens, sanitize_environment

__all__ = [
    "EngineNotFoundError",
    "EngineResult",
    "EngineRunner",
    "EngineRunnerError",
    "EngineSessionNotFoundError",
    "FakeEngineRunner",
    "SpawnTimeoutError",
    "build_engine_args",
    "estimate_tokens",
    "sanitize_environment",
]
