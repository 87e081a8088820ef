"""Config loading, interpolation, deep merge, and redaction for chat stream adapters.

Provides:
- YAML config loading (.chatstream.yaml or $CHATSTREAM_CONFIG)
- {env:VAR} secret interpolation with allowlist enforcement
- {file:path} secret file reading restricted to .chatstream.d/
- Deep merge for layered config (file < overrides)
- Redaction for safe logging (never leak API keys)

Config shape:

    chatstream:
      api_key: "{env:OPENAI_API_KEY}"
      model: gpt-4o-mini
      base_url: https://api.openai.com/v1
      params:
        temperature: 0.2
"""

from __future__ import annotations

import copy
import logging
import os
import re
import stat
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from chat_types import DEFAULT_BASE_URL, StreamingParams

logger = logging.getLogger("chatstream.config_loader")

REDACTED = "***REDACTED***"

DEFAULT_CONFIG_PATH = ".chatstream.yaml"
SECRETS_DIR = ".chatstream.d"

_ENV_ALLOWLIST = [
    re.compile(r"^CHATSTREAM_"),
    re.compile(r"^OPENAI_API_KEY$"),
]

# Interpolation tokens: {env:VAR}, {file:/path}
_INTERP_RE = re.compile(r"\{(env|file):([^}]+)\}")

_SENSITIVE_KEY_RE = re.compile(
    r"(auth|key|secret|token|password|credential|bearer)",
    re.IGNORECASE,
)


# ── Interpolation ─────────────────────────────────────────────────────


def _read_secret_file(file_path: str, project_root: str) -> str:
    """Read a secret file from .chatstream.d/, rejecting symlinks and loose permissions."""
    path = Path(file_path)
    if not path.is_absolute():
        path = Path(project_root) / path

    if path.is_symlink():
        raise ValueError(f"Secret file must not be a symlink: {file_path}")

    resolved = path.resolve()
    secrets_dir = (Path(project_root) / SECRETS_DIR).resolve()
    try:
        resolved.relative_to(secrets_dir)
    except ValueError:
        raise ValueError(
            f"Secret file '{file_path}' not in allowed directory {SECRETS_DIR}/"
        ) from None

    if not resolved.is_file():
        raise ValueError(f"Secret file not found: {resolved}")

    mode = stat.S_IMODE(resolved.stat().st_mode)
    if mode & 0o137:
        raise ValueError(
            f"Secret file has unsafe permissions ({oct(mode)}): {resolved}. Must be <= 0640"
        )

    return resolved.read_text().strip()


def interpolate_value(value: str, project_root: str = ".") -> str:
    """Resolve {env:VAR} and {file:path} tokens in a string value."""

    def _replace(match: re.Match) -> str:
        source_type, source_ref = match.group(1), match.group(2)

        if source_type == "env":
            if not any(p.search(source_ref) for p in _ENV_ALLOWLIST):
                raise ValueError(
                    f"Environment variable '{source_ref}' is not in the allowlist. "
                    f"Allowed: ^CHATSTREAM_.*, ^OPENAI_API_KEY$"
                )
            val = os.environ.get(source_ref)
            if val is None:
                raise ValueError(f"Environment variable '{source_ref}' is not set")
            return val

        return _read_secret_file(source_ref, project_root)

    return _INTERP_RE.sub(_replace, value)


def interpolate_config(config: Dict[str, Any], project_root: str = ".") -> Dict[str, Any]:
    """Recursively interpolate all string values. Returns a new dict."""
    result: Dict[str, Any] = {}
    for key, value in config.items():
        if isinstance(value, str):
            result[key] = interpolate_value(value, project_root)
        elif isinstance(value, dict):
            result[key] = interpolate_config(value, project_root)
        elif isinstance(value, list):
            result[key] = [
                interpolate_value(item, project_root) if isinstance(item, str) else item
                for item in value
            ]
        else:
            result[key] = value
    return result


# ── Deep merge ────────────────────────────────────────────────────────


def deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge overlay into base. Overlay values win.

    Returns a new dict (base and overlay are not modified).
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


# ── Loading ───────────────────────────────────────────────────────────


def load_config(
    path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Load YAML config, merge overrides, resolve interpolation tokens.

    A missing config file is not an error: overrides (and defaults) still apply.
    """
    config_path = path or os.environ.get("CHATSTREAM_CONFIG", DEFAULT_CONFIG_PATH)
    config: Dict[str, Any] = {}

    if os.path.exists(config_path):
        with open(config_path) as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config root must be a mapping: {config_path}")
        config = loaded
        logger.debug("Loaded config from %s", config_path)
    else:
        logger.debug("No config file at %s", config_path)

    if overrides:
        config = deep_merge(config, overrides)

    project_root = str(Path(config_path).resolve().parent)
    return interpolate_config(config, project_root)


def streaming_params_from_config(
    config: Dict[str, Any], model: Optional[str] = None
) -> StreamingParams:
    """Build StreamingParams from the `chatstream:` section of a loaded config."""
    section = config.get("chatstream", {}) or {}

    api_key = section.get("api_key", "")
    model_id = model or section.get("model", "")
    errors: List[str] = []
    if not api_key:
        errors.append("'chatstream.api_key' is required")
    if not model_id:
        errors.append("'chatstream.model' is required")
    if errors:
        raise ValueError("; ".join(errors))

    params = section.get("params", {}) or {}
    if not isinstance(params, dict):
        raise ValueError("'chatstream.params' must be a mapping")

    return StreamingParams(
        api_key=api_key,
        model=model_id,
        extra=dict(params),
        base_url=section.get("base_url") or DEFAULT_BASE_URL,
    )


# ── Redaction ─────────────────────────────────────────────────────────


def redact_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Create a redacted copy of config for display/logging."""
    result: Dict[str, Any] = {}
    for key, value in config.items():
        if isinstance(value, dict):
            result[key] = redact_config(value)
        elif _SENSITIVE_KEY_RE.search(key):
            result[key] = REDACTED
        else:
            result[key] = value
    return result


def redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Return a copy of headers with sensitive values redacted."""
    return {
        key: REDACTED if _SENSITIVE_KEY_RE.search(key) else value
        for key, value in headers.items()
    }
