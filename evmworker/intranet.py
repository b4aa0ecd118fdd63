"""Intranet event types and compact entity/event path arguments."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Any

__all__ = [
    "SPLIT_CHAR",
    "IntranetEventType",
    "IntranetEvent",
    "WorkerCheckResult",
    "WorkerPublicEndpointInfo",
    "WorkerIntranetEndpointInfo",
    "SearchByFieldParam",
    "PathToEntity",
    "PathToEvent",
    "is_intranet_event_type",
    "path_to_entity_from_event",
    "path_to_entity_from_str_arg",
    "path_to_entity_from_bytes_arg",
    "path_to_event_from_event",
    "path_to_event_from_str_arg",
    "path_to_event_from_bytes_arg",
]

SPLIT_CHAR = "|"


class IntranetEventType(IntEnum):
    """Internal protocol codes; used only between gateway and workers."""

    UNKNOWN_EVENT = 0
    W_T_W_EVENT_CALL = 1

    W_T_G_REGISTER = 10001
    W_T_G_GET_ENTITY = 10002
    W_T_G_GET_ENTITY_ATTRS = 10003
    W_T_G_GET_ENTITY_EVENTS = 10004
    W_T_G_GET_ENDPOINT_BY_EVENT = 10005
    W_T_G_VERIFY_EVENT = 10006
    W_T_G_VERIFY_EVENT_WITHOUT_EXPIRED = 10007
    W_T_G_GET_USER_ID_BY_UCODE = 10008
    W_T_G_SEARCH_USER_INFO = 10009
    W_T_G_REPORT_CONF_USED_BY = 10010
    W_T_G_GET_SHARED_CONFIGURE = 10011
    W_T_G_GET_CONSTANTS = 10012
    GW_T_G_REPORT_ENDPOINT = 10013
    W_T_G_GET_USER_DETAIL = 10014
    W_T_G_SAVE_USER_SENSITIVE_INFO = 10015
    W_T_G_GET_USER_SENSITIVE_INFO = 10016

    G_T_W_CHECK_WORKER = 20000
    G_T_W_RULE_UPDATE = 20001
    G_T_W_SHARED_CONFIGURE_CHANGE = 20002
    G_T_W_ENTITY_LIST_FOR_DATA_MGR = 20003
    G_T_W_RESET_DOMAIN_CACHE = 20004
    G_T_W_UPDATE_RECORD_FOR_DATA_MGR = 20005
    G_T_W_GET_LOADE_RATE = 20006

    WORKER_INTERNAL_PLUGIN = 30000


def is_intranet_event_type(value: int) -> bool:
    """Return whether ``value`` lies in the reserved internal range 1..40000."""
    return 1 <= value <= 40000


@dataclass
class IntranetEvent:
    """An internal event with its serialised parameters."""

    type: IntranetEventType = IntranetEventType.UNKNOWN_EVENT
    params: str = ""


@dataclass
class WorkerCheckResult:
    """Answer to a gateway check for a worker."""

    worker_id: str = ""
    exist: bool = False
    load_rate: float = 0.0


@dataclass
class WorkerPublicEndpointInfo:
    """Public address of a worker and its timeout."""

    timeout: int = 0
    public_endpoint: str = ""


@dataclass
class WorkerIntranetEndpointInfo:
    """Intranet address of a worker."""

    intranet_endpoint: str = ""


@dataclass
class SearchByFieldParam:
    """Common paged search-by-field query."""

    field: str = ""
    keyword: str = ""
    page: int = 0
    size: int = 0


@dataclass(frozen=True)
class PathToEntity:
    """Project, version, context and entity that identify an entity."""

    project: str = ""
    version: str = ""
    context: str = ""
    entity: str = ""

    def is_incomplete(self) -> bool:
        """Return True if any part is empty."""
        return not all((self.project, self.version, self.context, self.entity))

    def to_str_arg(self) -> str:
        """Join the parts into a compact string argument."""
        return SPLIT_CHAR.join((self.project, self.version, self.context, self.entity))


@dataclass(frozen=True)
class PathToEvent:
    """Entity path plus the event name."""

    project: str = ""
    version: str = ""
    context: str = ""
    entity: str = ""
    event: str = ""

    def is_incomplete(self) -> bool:
        """Return True if any part is empty."""
        return not all(
            (self.project, self.version, self.context, self.entity, self.event)
        )

    def to_str_arg(self) -> str:
        """Join the parts into a compact string argument."""
        return SPLIT_CHAR.join(
            (self.project, self.version, self.context, self.entity, self.event)
        )

    def to_path_to_entity(self) -> PathToEntity:
        """Return the entity path without the event."""
        return PathToEntity(self.project, self.version, self.context, self.entity)


def path_to_entity_from_event(event: Any) -> PathToEntity:
    """Build an entity path from an event object; ``None`` gives an empty path."""
    if event is None:
        return PathToEntity()
    return PathToEntity(event.project, event.version, event.context, event.entity)


def path_to_entity_from_str_arg(text: str) -> PathToEntity:
    """Parse a string argument; fewer than four parts gives an empty path."""
    if not text:
        return PathToEntity()
    parts = text.split(SPLIT_CHAR)
    if len(parts) < 4:
        return PathToEntity()
    return PathToEntity(*parts[:4])


def path_to_entity_from_bytes_arg(data: bytes) -> PathToEntity:
    """Parse a UTF-8 byte argument into an entity path."""
    return path_to_entity_from_str_arg(data.decode("utf-8"))


def path_to_event_from_event(event: Any) -> PathToEvent:
    """Build an event path from an event object; ``None`` gives an empty path."""
    if event is None:
        return PathToEvent()
    return PathToEvent(
        event.project, event.version, event.context, event.entity, event.event
    )


def path_to_event_from_str_arg(text: str) -> PathToEvent:
    """Parse a string argument; fewer than five parts gives an empty path."""
    if not text:
        return PathToEvent()
    parts = text.split(SPLIT_CHAR)
    if len(parts) < 5:
        return PathToEvent()
    return PathToEvent(*parts[:5])


def path_to_event_from_bytes_arg(data: bytes) -> PathToEvent:
    """Parse a UTF-8 byte argument into an event path."""
    return path_to_event_from_str_arg(data.decode("utf-8"))