"""Registry of workers, their routes, plugins, interceptors and filters."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Iterable, Mapping, Optional, Protocol, Sequence

from evmworker.intranet import IntranetEventType, PathToEntity
from evmworker.worker import (
    Filter,
    Intercept,
    Worker,
    WorkerExecutor,
    WorkerTaskExecutor,
)

__all__ = [
    "BUILT_IN_EXECUTOR_NAMES",
    "ExecutorType",
    "EntityEvent",
    "PluginWorker",
    "RegistrationError",
    "WorkerRegistry",
]

log = logging.getLogger(__name__)

BUILT_IN_EXECUTOR_NAMES = frozenset(
    {"query", "create", "update", "delete", "restore", "sql"}
)


class ExecutorType(IntEnum):
    """Kind of executor an entity event is handled by."""

    BUILD_IN_EXECUTOR = 1
    CUSTOM_EXECUTOR = 2
    TASK_EXECUTOR = 3


class RegistrationError(Exception):
    """Raised when a worker cannot be registered."""


class PluginWorker(Protocol):
    """A plugin that handles some intranet event types."""

    def setup(self) -> None:
        """Install the plugin."""

    def receive_codes(self) -> Iterable[IntranetEventType]:
        """Return the intranet event types the plugin handles."""

    def handle(self, ctx: Any, event_type: IntranetEventType) -> None:
        """Handle one intranet event."""


def _int(value: Any) -> int:
    if value is None or value == "":
        return 0
    return int(value)


@dataclass
class EntityEvent:
    """An event defined on an entity, and the executor that handles it."""

    id: str = ""
    entity_id: str = ""
    name: str = ""
    code: str = ""
    executor_type: int = 0
    executor: str = ""
    delay: int = 0
    timeout: int = 0
    params: str = ""
    mode: str = ""
    logable: bool = False
    auth_type: int = 0
    created_at: int = 0
    updated_at: int = 0
    deleted_at: int = 0
    deleted_by: str = ""
    creator: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EntityEvent":
        """Build an event from its JSON form (camel-case keys)."""
        raw_type = _int(data.get("executorType"))
        try:
            executor_type: int = ExecutorType(raw_type)
        except ValueError:
            executor_type = raw_type
        return cls(
            id=str(data.get("id", "")),
            entity_id=str(data.get("entityId", "")),
            name=str(data.get("name", "")),
            code=str(data.get("code", "")),
            executor_type=executor_type,
            executor=str(data.get("executor", "")),
            delay=_int(data.get("delay")),
            timeout=_int(data.get("timeout")),
            params=str(data.get("params", "")),
            mode=str(data.get("mode", "")),
            logable=bool(data.get("logable", False)),
            auth_type=_int(data.get("authType")),
            created_at=_int(data.get("createdAt")),
            updated_at=_int(data.get("updatedAt")),
            deleted_at=_int(data.get("deletedAt")),
            deleted_by=str(data.get("deletedBy", "")),
            creator=str(data.get("creator", "")),
        )


def _route_url(worker: Worker, event_code: str) -> str:
    return (
        f"{worker.project}.{worker.context}.{worker.entity}"
        f"->{event_code}@{worker.version_label}"
    )


class WorkerRegistry:
    """Keeps registered workers and everything that routes requests to them.

    ``built_in_executors`` maps the names of built-in executors (query,
    create, update, delete, restore, sql) to the callables that run them.
    """

    def __init__(
        self, built_in_executors: Optional[Mapping[str, WorkerExecutor]] = None
    ) -> None:
        self._built_in = dict(built_in_executors or {})
        self._worker_ids: set[str] = set()
        self._entity_workers: dict[str, Worker] = {}
        self._failed_workers: dict[str, Worker] = {}
        self._plugins: dict[IntranetEventType, PluginWorker] = {}
        self._interceptors: list[Intercept] = []
        self._filters: list[Filter] = []
        self._routers: dict[str, WorkerExecutor] = {}
        self._tasks: dict[str, WorkerTaskExecutor] = {}

    @property
    def interceptors(self) -> Sequence[Intercept]:
        """Interceptors in registration order."""
        return tuple(self._interceptors)

    @property
    def filters(self) -> Sequence[Filter]:
        """Filters in registration order."""
        return tuple(self._filters)

    @property
    def failed_workers(self) -> list[Worker]:
        """Workers whose registration failed and awaits a retry."""
        return list(self._failed_workers.values())

    def register_plugin(self, plugin: PluginWorker) -> None:
        """Route every event type the plugin receives to it."""
        for code in plugin.receive_codes():
            self._plugins[code] = plugin

    def find_plugin(self, event_type: IntranetEventType) -> Optional[PluginWorker]:
        """Return the plugin for ``event_type``, or None."""
        return self._plugins.get(event_type)

    def register_interceptor(self, interceptor: Intercept) -> None:
        """Append an interceptor."""
        self._interceptors.append(interceptor)

    def register_filter(self, filter_: Filter) -> None:
        """Append a filter."""
        self._filters.append(filter_)

    def find_worker_executor(self, name: str) -> Optional[WorkerExecutor]:
        """Return the event executor routed at ``name``, or None."""
        return self._routers.get(name)

    def find_worker_task_executor(self, name: str) -> Optional[WorkerTaskExecutor]:
        """Return the task executor routed at ``name``, or None."""
        return self._tasks.get(name)

    def has_worker(self, worker_id: str) -> bool:
        """Return whether a worker with ``worker_id`` is registered."""
        return worker_id in self._worker_ids

    def get_worker_by_event(self, path: PathToEntity) -> Optional[Worker]:
        """Return the worker serving the entity at ``path``, or None."""
        label = f"{path.project}.{path.context}.{path.entity}@{path.version}"
        return self._entity_workers.get(label)

    def add_worker(self, worker: Worker) -> None:
        """Record ``worker`` as registered for its versioned entity."""
        if worker.id in self._worker_ids:
            log.warning("worker registered again: %s", worker.id)
        self._worker_ids.add(worker.id)
        self._entity_workers[worker.version_entity_label()] = worker

    def setup_router(self, worker: Worker, events: Iterable[EntityEvent]) -> list[str]:
        """Route the worker's entity events to executors; return the routes set."""
        events = list(events)
        if not events:
            log.debug(
                "no events found: %s.%s.%s@%s",
                worker.project,
                worker.context,
                worker.entity,
                worker.version_label,
            )
            return []
        routed: list[str] = []
        for event in events:
            url = _route_url(worker, event.code)
            if event.executor_type == ExecutorType.BUILD_IN_EXECUTOR:
                executor = self._built_in.get(event.executor)
                if event.executor not in BUILT_IN_EXECUTOR_NAMES or executor is None:
                    log.warning("built-in executor not found: %s", event.executor)
                    continue
                self._routers[url] = executor
            elif event.executor_type == ExecutorType.CUSTOM_EXECUTOR:
                custom = worker.find_custom_executor(event.executor)
                if custom is None:
                    log.error("custom executor not found: %s", event.executor)
                    continue
                self._routers[url] = custom
            elif event.executor_type == ExecutorType.TASK_EXECUTOR:
                task = worker.find_task_executor(event.executor)
                if task is None:
                    log.error("task executor not found: %s", event.executor)
                    continue
                self._tasks[url] = task
            else:
                log.error("executor not found: %s", event.executor)
                continue
            routed.append(url)
        return routed

    def add_failed_worker(self, worker: Worker) -> None:
        """Remember a worker whose registration failed; the first one is kept."""
        self._failed_workers.setdefault(worker.id, worker)

    def remove_failed_worker(self, worker_id: str) -> None:
        """Forget a failed worker, if present."""
        self._failed_workers.pop(worker_id, None)