"""Environment and accounting helpers for engine calls."""

from __future__ import annotations

import math
import os
from typing import Mapping

# The daemon's own interpreter must not leak into the engine or task shells.
_PYTHON_VARS = ("PYTHONHOME", "PYTHONPATH", "VIRTUAL_ENV", "PIP_RESPECT_VIRTUALENV")

# Markers of a parent engine session; a nested engine refuses to start.
_ENGINE_SESSION_VARS = ("CLAUDECODE", "CLAUDE_CODE_ENTRYPOINT", "CLAUDE_CODE_SSE_PORT")

CHARS_PER_TOKEN = 4


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Copy ``os.environ`` without interpreter and parent engine-session variables."""

    env = {
        key: value
        for key, value in os.environ.items()
        if key not in _PYTHON_VARS and key not in _ENGINE_SESSION_VARS
    }
    if additional:
        env.update(additional)
    return env


def estimate_tokens(prompt: str, output: str) -> int:
    """Rough token estimate for an engine call: input plus output characters over four."""

    return math.ceil((len(prompt) + len(output)) / CHARS_PER_TOKEN)
