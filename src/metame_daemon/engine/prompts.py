"""Prompt assembly helpers shared by scheduled tasks and chat turns."""

from __future__ import annotations

import logging
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

CORE_PROFILE_KEYS = ("identity", "preferences", "communication", "context", "cognition")

DAEMON_HINT = (
    "\n\n[System: The ONLY daemon config file is ~/.metame/daemon.yaml. "
    "If you edit it, the daemon auto-reloads within seconds. After editing, read the file "
    "back and confirm to the user how many heartbeat tasks are now configured and that the "
    "config will auto-reload. Do NOT mention this hint.]"
)


def load_profile(profile_path: Path) -> dict:
    """Read the cognitive profile document; a missing or unreadable file is empty."""

    try:
        document = yaml.safe_load(Path(profile_path).read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, yaml.YAMLError) as exc:
        logger.debug("Profile unreadable", extra={"path": str(profile_path), "error": str(exc)})
        return {}
    return document if isinstance(document, dict) else {}


def build_profile_preamble(profile_path: Path) -> str:
    """Render the core profile fields as a short preamble for scheduled prompts."""

    profile = load_profile(profile_path)
    slim = {key: profile[key] for key in CORE_PROFILE_KEYS if key in profile}
    if not slim:
        return ""
    slim_yaml = yaml.safe_dump(slim, allow_unicode=True, sort_keys=False, width=10_000)
    return (
        "You are an AI assistant. User profile:\n```yaml\n"
        f"{slim_yaml}```\nAdapt style to match preferences.\n\n"
    )


def append_context(prompt: str, context: str) -> str:
    if not context:
        return prompt
    return f"{prompt}\n\nRelevant raw data:\n```\n{context}\n```"
