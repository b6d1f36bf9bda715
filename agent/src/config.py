from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

DEFAULT_RETRY_INTERVAL = timedelta(minutes=5)
DEFAULT_RETRY_ATTEMPTS = 10
DEFAULT_LOG_LEVEL = "info"

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS: dict[str, float] = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


class ConfigError(RuntimeError):
    """Raised when the agent configuration is invalid."""


@dataclass(frozen=True)
class AgentConfig:
    """Immutable agent settings resolved once at startup.

    Attributes:
        node_name:       Node to resolve; empty means look the node up by hostname.
        kubeconfig_path: Out-of-cluster credentials; empty means in-cluster discovery.
        retry_interval:  Wait between static IP assignment attempts.
        retry_attempts:  Number of static IP assignment attempts.
        log_level:       One of debug, info, warning, error, fatal, panic.
        log_json:        Emit JSON log lines instead of text.
        develop_mode:    Relax checks that only hold on cloud-managed nodes.
        health_port:     Port for ``/healthz``, ``/readyz`` and ``/metrics``; ``0`` disables it.
    """

    node_name: str = ""
    kubeconfig_path: str = ""
    retry_interval: timedelta = DEFAULT_RETRY_INTERVAL
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS
    log_level: str = DEFAULT_LOG_LEVEL
    log_json: bool = False
    develop_mode: bool = False
    health_port: int = 0


def parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_duration(value: str) -> timedelta:
    """Parse a duration such as ``5m``, ``1h30m``, ``1.5h`` or ``300ms``.

    A bare number is read as seconds.  Negative and zero-length inputs are
    rejected.
    """
    text = value.strip()
    if not text:
        raise ConfigError("duration must not be empty")
    if text.startswith("-"):
        raise ConfigError(f"duration must not be negative, got: {value!r}")
    text = text.lstrip("+")

    seconds = 0.0
    if re.fullmatch(r"\d+(?:\.\d*)?|\.\d+", text):
        seconds = float(text)
    else:
        position = 0
        for match in _DURATION_PART.finditer(text):
            if match.start() != position:
                break
            seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
            position = match.end()
        if position == 0 or position != len(text):
            raise ConfigError(f"invalid duration: {value!r}")

    try:
        return timedelta(seconds=seconds)
    except OverflowError as exc:
        raise ConfigError(f"duration out of range: {value!r}") from exc


def _pick(arg_value: Any, env: Mapping[str, str], env_name: str) -> Any:
    if arg_value is not None:
        return arg_value
    return env.get(env_name)


def _parse_int(name: str, raw: Any, default: int) -> int:
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be an integer, got: {raw!r}") from exc


def load_config(args: Any, env: Mapping[str, str] | None = None) -> AgentConfig:
    """Build an :class:`AgentConfig` from parsed CLI arguments and the environment.

    Resolution order for every field: explicit flag, then environment
    variable, then the built-in default.  ``args`` is any object carrying
    the ``run`` subcommand attributes (an ``argparse.Namespace`` in
    production); attributes left as ``None`` fall through to ``env``.
    """
    values = env if env is not None else os.environ

    node_name = _pick(getattr(args, "node_name", None), values, "CLUSTER_NAME") or ""
    kubeconfig_path = _pick(getattr(args, "kubeconfig", None), values, "KUBECONFIG") or ""
    if kubeconfig_path:
        kubeconfig_path = os.path.expanduser(kubeconfig_path)

    raw_interval = _pick(getattr(args, "retry_interval", None), values, "RETRY_INTERVAL")
    if raw_interval is None or raw_interval == "":
        retry_interval = DEFAULT_RETRY_INTERVAL
    elif isinstance(raw_interval, timedelta):
        retry_interval = raw_interval
    else:
        retry_interval = parse_duration(str(raw_interval))
    if retry_interval <= timedelta(0):
        raise ConfigError("retry-interval must be greater than zero")

    retry_attempts = _parse_int(
        "retry-attempts",
        _pick(getattr(args, "retry_attempts", None), values, "RETRY_ATTEMPTS"),
        DEFAULT_RETRY_ATTEMPTS,
    )
    if retry_attempts < 0:
        raise ConfigError(f"retry-attempts must be >= 0, got: {retry_attempts}")

    log_level = (
        _pick(getattr(args, "log_level", None), values, "LOG_LEVEL") or DEFAULT_LOG_LEVEL
    )

    log_json = getattr(args, "json", None)
    if not log_json:
        log_json = parse_bool(values.get("LOG_JSON"))

    develop_mode = getattr(args, "develop_mode", None)
    if not develop_mode:
        develop_mode = parse_bool(values.get("DEV_MODE"))

    health_port = _parse_int(
        "health-port",
        _pick(getattr(args, "health_port", None), values, "HEALTH_PORT"),
        0,
    )
    if not 0 <= health_port <= 65535:
        raise ConfigError(f"health-port must be between 0 and 65535, got: {health_port}")

    return AgentConfig(
        node_name=str(node_name).strip(),
        kubeconfig_path=str(kubeconfig_path),
        retry_interval=retry_interval,
        retry_attempts=retry_attempts,
        log_level=str(log_level),
        log_json=bool(log_json),
        develop_mode=bool(develop_mode),
        health_port=health_port,
    )
