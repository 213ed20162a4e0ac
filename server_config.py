"""
server_config.py - Configuration for Olleh Gateway
"""

import os
import logging
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

# ============================================================================
# Server Settings
# ============================================================================

# Client-facing Ollama-compatible API server
HOST = "127.0.0.1"
PORT = 43110

# ============================================================================
# Backend Configuration
# ============================================================================

# OpenAI-compatible upstream (llama-server, vLLM, LM Studio, ...)
BACKEND_URL = "http://127.0.0.1:8081"

# Timeout for generation requests to the upstream (seconds)
BACKEND_TIMEOUT = 300.0

# Timeout for the availability probe (seconds)
HEALTH_TIMEOUT = 5.0

# Upstream model used when a client asks for the protocol's "default" model
DEFAULT_MODEL = "default"

# ============================================================================
# Protocol Metadata
# ============================================================================

GATEWAY_VERSION = "0.3.0"

# Static placeholder details advertised for every model.
# The backend exposes no per-model introspection.
MODEL_DETAILS: Dict[str, Any] = {
    "parent_model": "",
    "format": "gateway",
    "family": "generic",
    "families": ["generic"],
    "parameter_size": "unknown",
    "quantization_level": "unknown",
}

SHOW_MODELFILE = "FROM olleh/gateway"
SHOW_TEMPLATE = "{{ .Prompt }}"
SHOW_LICENSE = "Backend-defined"

# ============================================================================
# Logging
# ============================================================================

LOG_LEVEL = "INFO"  # DEBUG, INFO, WARNING, ERROR
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class ServerSettings(BaseModel):
    """Immutable runtime settings, built once at startup and shared by every request."""

    model_config = ConfigDict(frozen=True)

    host: str = HOST
    port: int = PORT
    backend_url: str = BACKEND_URL
    backend_timeout: float = BACKEND_TIMEOUT
    health_timeout: float = HEALTH_TIMEOUT
    default_model: str = DEFAULT_MODEL
    log_level: str = LOG_LEVEL
    log_format: str = LOG_FORMAT


def _env_number(env: Mapping[str, str], name: str, cast, default):
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}, using {default}")
        return default
    logger.info(f"Environment override: {name}={value}")
    return value


def load_settings(env: Optional[Mapping[str, str]] = None, **overrides: Any) -> ServerSettings:
    """
    Build the runtime settings with override priority:
    1. Explicit keyword overrides (command line)
    2. Environment variables (OLLEH_*)
    3. Module defaults

    Args:
        env: Environment mapping (defaults to os.environ)
        **overrides: Values that win over everything else; None values are skipped

    Returns:
        Frozen ServerSettings
    """
    if env is None:
        env = os.environ

    values: Dict[str, Any] = {
        "host": env.get("OLLEH_HOST") or HOST,
        "port": _env_number(env, "OLLEH_PORT", int, PORT),
        "backend_url": (env.get("OLLEH_BACKEND_URL") or BACKEND_URL).rstrip("/"),
        "backend_timeout": _env_number(env, "OLLEH_BACKEND_TIMEOUT", float, BACKEND_TIMEOUT),
        "health_timeout": _env_number(env, "OLLEH_HEALTH_TIMEOUT", float, HEALTH_TIMEOUT),
        "default_model": env.get("OLLEH_DEFAULT_MODEL") or DEFAULT_MODEL,
        "log_level": (env.get("OLLEH_LOG_LEVEL") or LOG_LEVEL).upper(),
    }

    for key, value in overrides.items():
        if value is None:
            continue
        if key == "backend_url":
            value = value.rstrip("/")
        elif key == "log_level":
            value = value.upper()
        values[key] = value

    return ServerSettings(**values)


def validate_settings(settings: ServerSettings) -> list:
    """
    Validate settings and return list of warnings.

    Returns:
        List of warning messages (empty if all OK)
    """
    issues = []

    if not (0 < settings.port < 65536):
        issues.append(f"Port out of range: {settings.port}")

    if not settings.backend_url.startswith(("http://", "https://")):
        issues.append(f"Backend URL is not an http(s) URL: {settings.backend_url}")

    if settings.backend_timeout <= 0:
        issues.append(f"Backend timeout must be positive: {settings.backend_timeout}")

    if settings.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        issues.append(f"Unknown log level: {settings.log_level}")

    return issues
