"""Worker server configuration and its default values."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from enum import Enum
from typing import Any

__all__ = [
    "EventMode",
    "ServerMode",
    "WorkerServerConfig",
    "patch_worker_server_config",
    "load_worker_server_config",
]

_MEGABYTE = 1024 * 1024


class EventMode(str, Enum):
    """Mode in which a worker handles events."""

    COMMAND_MODE = "C"
    QUERY_MODE = "Q"


class ServerMode(str, Enum):
    """Environment the server runs in."""

    DEV = "DEV"
    PROD = "PROD"


@dataclass
class WorkerServerConfig:
    """Complete configuration of a worker server."""

    # Basic settings
    server_id: str = ""
    work_mode: str = ""
    version: str = ""
    mode: str = ""

    # Public API service
    public_host: str = ""
    public_port: int = 0
    http_read_timeout: int = 0
    http_write_timeout: int = 0

    # Intranet service
    intranet_host: str = ""
    intranet_port: int = 0
    intranet_secret: str = ""
    intranet_secret_algor: str = ""
    intranet_client_max_idle_conns_per_host: int = 0
    intranet_client_connection_expired: int = 0
    intranet_client_write_timeout: int = 0
    intranet_compress: bool = False

    # Logging
    log_level: str = ""
    log_location: str = ""
    log_slice_period: int = 0

    # Default cache
    default_cache_max_men: int = 0
    default_cache_ttl: int = 0

    # Domain model cache
    domain_cache_max_men: int = 0
    domain_cache_ttl: int = 0

    # Other
    gateway_intranet_endpoint: str = ""
    heartbeat_report_gap: int = 0
    not_accept_update_record_event_from_gateway: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Return the configuration as a JSON-ready mapping."""
        return {
            key: value.value if isinstance(value, Enum) else value
            for key, value in asdict(self).items()
        }


def _field_types() -> dict[str, type]:
    defaults = WorkerServerConfig()
    return {f.name: type(getattr(defaults, f.name)) for f in fields(WorkerServerConfig)}


_FIELD_TYPES = _field_types()


def patch_worker_server_config(cfg: WorkerServerConfig) -> WorkerServerConfig:
    """Fill empty or zero settings of ``cfg`` with defaults, in place, and return it."""
    if cfg.server_id == "":
        cfg.server_id = "worker-1"
    if cfg.work_mode == "":
        cfg.work_mode = EventMode.COMMAND_MODE.value
    cfg.work_mode = cfg.work_mode.upper()
    if cfg.work_mode == "QUERY":
        cfg.work_mode = EventMode.QUERY_MODE.value
    if cfg.work_mode == "COMMAND":
        cfg.work_mode = EventMode.COMMAND_MODE.value
    if cfg.version == "":
        cfg.version = "0.0.1"
    if cfg.log_slice_period < 5:
        cfg.log_slice_period = 20
    if cfg.mode == "":
        cfg.mode = ServerMode.DEV.value
    if cfg.public_port == 0:
        cfg.public_port = 8080
    if cfg.http_read_timeout == 0:
        cfg.http_read_timeout = 10
    if cfg.http_write_timeout == 0:
        cfg.http_write_timeout = 10
    if cfg.log_level == "":
        cfg.log_level = "debug"
    if cfg.log_location == "":
        cfg.log_location = "logs"
    if cfg.default_cache_max_men == 0:
        cfg.default_cache_max_men = 100 * _MEGABYTE
    if cfg.default_cache_ttl == 0:
        cfg.default_cache_ttl = 5 * 60
    if cfg.domain_cache_max_men == 0:
        cfg.domain_cache_max_men = 100 * _MEGABYTE
    if cfg.domain_cache_ttl == 0:
        cfg.domain_cache_ttl = 5 * 60
    if cfg.intranet_client_max_idle_conns_per_host == 0:
        cfg.intranet_client_max_idle_conns_per_host = 200
    if cfg.intranet_client_connection_expired == 0:
        cfg.intranet_client_connection_expired = 60 * 5
    if cfg.intranet_client_write_timeout == 0:
        cfg.intranet_client_write_timeout = 30
    if cfg.heartbeat_report_gap == 0:
        cfg.heartbeat_report_gap = 60
    if cfg.intranet_secret_algor == "":
        cfg.intranet_secret_algor = "NONE"
    return cfg


def _check_type(key: str, value: Any, expected: type) -> None:
    if expected is bool:
        ok = isinstance(value, bool)
    elif expected is int:
        ok = isinstance(value, int) and not isinstance(value, bool)
    else:
        ok = isinstance(value, expected)
    if not ok:
        raise ValueError(
            f"field {key!r} expects {expected.__name__}, got {type(value).__name__}"
        )


def load_worker_server_config(text: str) -> WorkerServerConfig:
    """Parse a JSON document into a configuration; unknown keys are ignored.

    Raises ``ValueError`` for malformed JSON or values of the wrong type.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid configuration JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError("configuration must be a JSON object")
    values: dict[str, Any] = {}
    for key, value in data.items():
        expected = _FIELD_TYPES.get(key)
        if expected is None or value is None:
            continue
        _check_type(key, value, expected)
        values[key] = value
    return WorkerServerConfig(**values)