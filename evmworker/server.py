"""Worker server that talks to the public network and to the gateway intranet."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from http import HTTPStatus
from typing import Any, Iterable, Mapping, Optional, Protocol

from evmworker.config import (
    EventMode,
    WorkerServerConfig,
    load_worker_server_config,
    patch_worker_server_config,
)
from evmworker.registry import RegistrationError, WorkerRegistry
from evmworker.rules import RuleEngineError, RuleEngineManager
from evmworker.schema import Repository, SchemaError
from evmworker.worker import Worker, WorkerExecutor

__all__ = [
    "SUCCESS",
    "WORKER_ENDPOINT",
    "ConfigurationError",
    "GatewayClient",
    "TwoWayWorkerServerSettings",
    "TwoWayWorkerServer",
    "new_two_way_worker_server",
]

log = logging.getLogger(__name__)

SUCCESS = "SUCCESS"
WORKER_ENDPOINT = "WORKER"
_MIN_HEARTBEAT_GAP = 3
_DEFAULT_HEARTBEAT_GAP = 30


class ConfigurationError(Exception):
    """Raised when the server settings or its configuration are unusable."""


class GatewayClient(Protocol):
    """Intranet client of the gateway.

    Shared configurations are objects with ``key``, ``type`` and ``value``
    attributes.
    """

    def load_shared_configures(self, keys: list[str]) -> Mapping[str, Any]:
        """Return the shared configurations found for ``keys``."""

    def report_endpoint(self, endpoint: Mapping[str, Any]) -> None:
        """Tell the gateway where this server listens."""

    def register_worker(self, worker: Worker) -> tuple[int, str]:
        """Register ``worker``; return the HTTP status and the response body."""

    def report_config_used_by(self, cfg_key: str, worker_id: str) -> None:
        """Record that ``worker_id`` uses the shared configuration ``cfg_key``."""


class _NetworkServer(Protocol):
    def start(self) -> None: ...

    def stop(self) -> None: ...


class _DomainCache(Protocol):
    def entity(self, path: Any) -> Any: ...

    def entity_events(self, path: Any) -> Iterable[Any]: ...

    def entity_attrs(self, path: Any) -> Iterable[Any]: ...


@dataclass
class TwoWayWorkerServerSettings:
    """What is needed to fetch the full configuration and build a server."""

    cfg_key: str = ""
    intranet_secret: str = ""
    intranet_secret_algor: str = ""
    gateway_intranet_endpoint: str = ""
    public_server: Optional[_NetworkServer] = None
    intranet_server: Optional[_NetworkServer] = None
    domain_cache: Optional[_DomainCache] = None
    built_in_executors: Mapping[str, WorkerExecutor] = field(default_factory=dict)


def _utc_offset_seconds() -> int:
    offset = datetime.now().astimezone().utcoffset()
    return int(offset.total_seconds()) if offset is not None else 0


def _event_mode(work_mode: str) -> str:
    mode = work_mode.upper()
    if mode in ("Q", "QUERY"):
        return EventMode.QUERY_MODE.value
    return EventMode.COMMAND_MODE.value


class TwoWayWorkerServer:
    """Serves workers publicly and on the intranet, and registers them with the gateway."""

    def __init__(
        self,
        gateway: GatewayClient,
        cfg: Optional[WorkerServerConfig] = None,
        cfg_key: str = "",
        shared_configures: Optional[Mapping[str, Any]] = None,
        public_server: Optional[_NetworkServer] = None,
        intranet_server: Optional[_NetworkServer] = None,
        domain_cache: Optional[_DomainCache] = None,
        built_in_executors: Optional[Mapping[str, WorkerExecutor]] = None,
    ) -> None:
        self.cfg = cfg if cfg is not None else patch_worker_server_config(WorkerServerConfig())
        self.cfg_key = cfg_key
        self.gateway = gateway
        self.public_server = public_server
        self.intranet_server = intranet_server
        self.domain_cache = domain_cache
        self.on_shared_configure_change: Optional[Any] = None
        self._lock = threading.Lock()
        self._shared_configures: dict[str, Any] = {
            key: value for key, value in (shared_configures or {}).items() if value is not None
        }
        self.registry = WorkerRegistry(built_in_executors)
        self.rule_engines = RuleEngineManager(domain_cache, server=self)
        self.repo = Repository(self.shared_configure, domain_cache)
        self._intranet_thread: Optional[threading.Thread] = None

    @property
    def server_id(self) -> str:
        return self.cfg.server_id

    @property
    def intranet_secret(self) -> str:
        return self.cfg.intranet_secret

    @property
    def intranet_secret_algor(self) -> str:
        return self.cfg.intranet_secret_algor

    @property
    def gateway_intranet_endpoint(self) -> str:
        return self.cfg.gateway_intranet_endpoint

    def start(self) -> None:
        """Report the endpoint, start the intranet server in a thread, then the public one."""
        endpoint = {
            "serverId": self.cfg.server_id,
            "publicHost": self.cfg.public_host,
            "publicPort": self.cfg.public_port,
            "intranetHost": self.cfg.intranet_host,
            "intranetPort": self.cfg.intranet_port,
            "type": WORKER_ENDPOINT,
        }
        try:
            self.gateway.report_endpoint(endpoint)
        except Exception as exc:  # the server runs even if the report fails
            log.error("failed to report worker server endpoint: %s", exc)
        if self.intranet_server is not None:
            self._intranet_thread = threading.Thread(
                target=self._run_intranet, name="intranet-server", daemon=True
            )
            self._intranet_thread.start()
        if self.public_server is not None:
            self.public_server.start()

    def _run_intranet(self) -> None:
        assert self.intranet_server is not None
        try:
            self.intranet_server.start()
        except Exception as exc:
            log.error("failed to start intranet server: %s", exc)

    def stop(self) -> None:
        """Stop the public server, then the intranet server."""
        if self.public_server is not None:
            self.public_server.stop()
        if self.intranet_server is not None:
            self.intranet_server.stop()

    def shared_configure(self, sid: str) -> Optional[Any]:
        """Return shared configuration ``sid``, loading it from the gateway once."""
        with self._lock:
            cached = self._shared_configures.get(sid)
        if cached is not None:
            return cached
        configs = self.gateway.load_shared_configures([sid])
        if not configs:
            return None
        config = configs.get(sid)
        if config is not None:
            with self._lock:
                self._shared_configures[sid] = config
        return config

    def register_worker(self, worker: Worker) -> None:
        """Register ``worker`` with the gateway and set up its routes and rules.

        A worker the gateway does not accept is kept for a later retry.
        """
        if worker.cfg_key:
            try:
                self.repo.add_db_from_shared_config(worker.cfg_key)
            except SchemaError as exc:
                raise RegistrationError(f"failed to initialise database: {exc}") from exc
        try:
            reply = self._register_to_gateway(worker)
        except Exception as exc:
            self.registry.add_failed_worker(worker)
            raise RegistrationError(f"failed to register with gateway: {exc}") from exc
        if reply.strip() != SUCCESS:
            self.registry.add_failed_worker(worker)
            raise RegistrationError(reply)
        self.registry.add_worker(worker)
        path = worker.path_to_entity()
        if worker.sync_schema:
            try:
                self.repo.sync_schema(worker)
            except SchemaError as exc:
                log.error("schema sync failed for %s: %s", worker.id, exc)
        events = list(self.domain_cache.entity_events(path)) if self.domain_cache else []
        self.registry.setup_router(worker, events)
        try:
            self.rule_engines.add_rule_engine(worker)
        except RuleEngineError as exc:
            log.debug("no rule engine for %s: %s", worker.version_entity_label(), exc)
        self.registry.remove_failed_worker(worker.id)
        for cfg_key in (worker.cfg_key, self.cfg_key):
            if not cfg_key:
                continue
            try:
                self.gateway.report_config_used_by(cfg_key, worker.id)
            except Exception as exc:
                log.error("failed to report configuration use: %s", exc)

    def _register_to_gateway(self, worker: Worker) -> str:
        worker.server_id = self.cfg.server_id
        worker.public_endpoint = f"{self.cfg.public_host}:{self.cfg.public_port}"
        worker.intranet_endpoint = f"{self.cfg.intranet_host}:{self.cfg.intranet_port}"
        worker.heartbeat_gap = self.cfg.heartbeat_report_gap
        worker.utc_offset = _utc_offset_seconds()
        worker.mode = _event_mode(self.cfg.work_mode)
        worker.gen_id()
        worker.build_executors()
        if worker.heartbeat_gap < _MIN_HEARTBEAT_GAP:
            worker.heartbeat_gap = _DEFAULT_HEARTBEAT_GAP
        status, body = self.gateway.register_worker(worker)
        if status != HTTPStatus.OK:
            raise RegistrationError(f"gateway answered with status {status}")
        return body

    def retry_failed_workers(self) -> int:
        """Try to register every failed worker again; return how many succeeded."""
        registered = 0
        for worker in self.registry.failed_workers:
            try:
                self.register_worker(worker)
            except RegistrationError as exc:
                log.error("%s", exc)
                continue
            registered += 1
        return registered


def new_two_way_worker_server(
    settings: TwoWayWorkerServerSettings, gateway: GatewayClient
) -> TwoWayWorkerServer:
    """Fetch the server configuration from the gateway and build the server."""
    if not (
        settings.cfg_key
        and settings.intranet_secret
        and settings.intranet_secret_algor
        and settings.gateway_intranet_endpoint
    ):
        raise ConfigurationError(
            "incomplete settings: cfg_key, intranet_secret, intranet_secret_algor "
            "and gateway_intranet_endpoint are required"
        )
    preloads = dict(gateway.load_shared_configures([settings.cfg_key]))
    if settings.cfg_key not in preloads:
        raise ConfigurationError("worker server configuration does not exist")
    preload = preloads[settings.cfg_key]
    text = getattr(preload, "value", "") if preload is not None else ""
    if not text:
        raise ConfigurationError("worker server configuration is empty")
    try:
        cfg = load_worker_server_config(text)
    except ValueError as exc:
        raise ConfigurationError(f"cannot parse worker server configuration: {exc}") from exc
    if not cfg.public_host or cfg.public_port == 0:
        raise ConfigurationError("public_host and public_port must be set")
    patch_worker_server_config(cfg)
    cfg.intranet_secret = settings.intranet_secret
    cfg.intranet_secret_algor = settings.intranet_secret_algor
    cfg.gateway_intranet_endpoint = settings.gateway_intranet_endpoint
    shared = {
        getattr(value, "key", key) or key: value
        for key, value in preloads.items()
        if value is not None
    }
    return TwoWayWorkerServer(
        gateway,
        cfg=cfg,
        cfg_key=settings.cfg_key,
        shared_configures=shared,
        public_server=settings.public_server,
        intranet_server=settings.intranet_server,
        domain_cache=settings.domain_cache,
        built_in_executors=settings.built_in_executors,
    )