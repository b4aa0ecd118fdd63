"""Worker descriptions and the executors they carry."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from evmworker.intranet import SPLIT_CHAR, PathToEntity

__all__ = [
    "WorkerExecutor",
    "WorkerTaskExecutor",
    "Intercept",
    "Filter",
    "Worker",
    "new_worker",
    "worker_from_version_entity_label",
]

# An event executor takes a worker context and returns (response, status).
WorkerExecutor = Callable[[Any], Any]
# A task executor takes a worker context and returns a task status.
WorkerTaskExecutor = Callable[[Any], Any]
# An interceptor returns True to stop further processing.
Intercept = Callable[[Any], bool]
# A filter receives the context and the response; True stops further filters.
Filter = Callable[[Any, Any], bool]

_DEFAULT_REBALANCE_TIME = 3


def _text(value: Any) -> str:
    return value.value if isinstance(value, Enum) else str(value)


@dataclass
class Worker:
    """A worker serving one versioned entity of a project."""

    id: str = ""
    server_id: str = ""
    project: str = ""
    version_label: str = ""
    context: str = ""
    entity: str = ""

    mode: str = ""
    cfg_key: str = ""
    heartbeat_gap: int = 0
    rebalance_time: int = 0
    public_endpoint: str = ""
    intranet_endpoint: str = ""

    custom_executors: str = ""
    task_executors: str = ""
    created_at: int = 0
    updated_at: int = 0
    utc_offset: int = 0

    load_rate: float = 0.0
    sync_schema: bool = False
    last_heartbeat: int = 0

    _custom_executor_map: dict[str, WorkerExecutor] = field(
        default_factory=dict, repr=False, compare=False
    )
    _task_executor_map: dict[str, WorkerTaskExecutor] = field(
        default_factory=dict, repr=False, compare=False
    )

    def gen_id(self) -> str:
        """Derive the id from server, project, version, context, entity and mode."""
        data = "".join(
            (
                self.server_id,
                self.project,
                self.version_label,
                self.context,
                self.entity,
                _text(self.mode),
            )
        )
        self.id = hashlib.md5(data.encode("utf-8")).hexdigest()
        return self.id

    def add_custom_executor(self, name: str, executor: WorkerExecutor) -> None:
        """Register an event executor under ``name``."""
        self._custom_executor_map[name] = executor

    def find_custom_executor(self, name: str) -> Optional[WorkerExecutor]:
        """Return the event executor named ``name``, or None."""
        return self._custom_executor_map.get(name)

    def add_task_executor(self, name: str, executor: WorkerTaskExecutor) -> None:
        """Register a task executor under ``name``."""
        self._task_executor_map[name] = executor

    def find_task_executor(self, name: str) -> Optional[WorkerTaskExecutor]:
        """Return the task executor named ``name``, or None."""
        return self._task_executor_map.get(name)

    def build_executors(self) -> None:
        """Fill the executor name lists from the registered executors."""
        self.custom_executors = SPLIT_CHAR.join(self._custom_executor_map)
        self.task_executors = SPLIT_CHAR.join(self._task_executor_map)

    def is_incomplete(self) -> bool:
        """Return True if any identifying field is empty."""
        return not all(
            (
                self.id,
                self.server_id,
                self.public_endpoint,
                self.project,
                self.version_label,
                self.context,
                self.entity,
                _text(self.mode),
            )
        )

    def version_entity_label(self) -> str:
        """Return the label ``project.context.entity@version``."""
        return f"{self.project}.{self.context}.{self.entity}@{self.version_label}"

    def table_name(self) -> str:
        """Return the table name ``context_entity``."""
        return f"{self.context}_{self.entity}"

    def path_to_entity(self) -> PathToEntity:
        """Return the entity path this worker serves."""
        return PathToEntity(self.project, self.version_label, self.context, self.entity)

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form exchanged with the gateway."""
        return {
            "id": self.id,
            "serverId": self.server_id,
            "project": self.project,
            "versionLabel": self.version_label,
            "context": self.context,
            "entity": self.entity,
            "mode": _text(self.mode),
            "cfgKey": self.cfg_key,
            "heartbeatGap": self.heartbeat_gap,
            "rebalanceTime": self.rebalance_time,
            "publicEndpoint": self.public_endpoint,
            "intranetEndpoint": self.intranet_endpoint,
            "customExecutors": self.custom_executors,
            "taskExecutors": self.task_executors,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "utcOffset": self.utc_offset,
            "loadRate": self.load_rate,
            "lastHeartbeat": self.last_heartbeat,
        }


def new_worker(
    project: str,
    version_label: str,
    context: str,
    entity: str,
    cfg_key: str = "",
    rebalance_time: int = 0,
) -> Worker:
    """Create a worker that syncs its schema; rebalance time defaults to 3 s."""
    if rebalance_time <= 0:
        rebalance_time = _DEFAULT_REBALANCE_TIME
    return Worker(
        project=project,
        version_label=version_label,
        context=context,
        entity=entity,
        cfg_key=cfg_key,
        rebalance_time=rebalance_time,
        sync_schema=True,
    )


def worker_from_version_entity_label(label: str) -> Optional[Worker]:
    """Parse ``project.context.entity@version`` into a worker, or None."""
    parts = label.split("@")
    if len(parts) != 2:
        return None
    domain, version_label = parts
    names = domain.split(".")
    if len(names) != 3:
        return None
    project, context, entity = names
    return new_worker(project, version_label, context, entity)