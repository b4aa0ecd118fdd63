"""Business rule engines kept per versioned entity."""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

from evmworker.intranet import PathToEntity
from evmworker.worker import Worker

__all__ = [
    "DomainCache",
    "BusinessRule",
    "RuleUpdateParam",
    "RuleEngineError",
    "RuleEngine",
    "RuleEngineManager",
]

log = logging.getLogger(__name__)

RuleFunc = Callable[[Any, Any, Any], Any]


class DomainCache(Protocol):
    """Cache of domain models; the manager needs only entity lookup."""

    def entity(self, path: PathToEntity) -> Any:
        """Return the entity at ``path`` or None."""


class RuleEngineError(Exception):
    """Raised when rules cannot be loaded or parsed."""


@dataclass
class BusinessRule:
    """A business rule: its id and the rule chain definition text."""

    id: str = ""
    context: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "BusinessRule":
        if not isinstance(data, dict):
            raise RuleEngineError("a rule must be a JSON object")
        rule_id = data.get("id", "")
        context = data.get("context", "")
        if not isinstance(rule_id, str) or not isinstance(context, str):
            raise RuleEngineError("rule 'id' and 'context' must be strings")
        return cls(rule_id, context)


def _parse_rules(data: Any) -> list[BusinessRule]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise RuleEngineError("rules must be a JSON array")
    return [BusinessRule.from_dict(item) for item in data]


@dataclass
class RuleUpdateParam:
    """Rules to apply to the engines of one versioned entity."""

    rules: list[BusinessRule] = field(default_factory=list)
    entity_version_label: str = ""

    @classmethod
    def from_json(cls, text: str) -> "RuleUpdateParam":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise RuleEngineError(f"invalid rule update: {exc}") from exc
        if not isinstance(data, dict):
            raise RuleEngineError("rule update must be a JSON object")
        label = data.get("entity_version_label", "")
        if not isinstance(label, str):
            raise RuleEngineError("'entity_version_label' must be a string")
        return cls(_parse_rules(data.get("rules")), label)


def _parse_definition(text: str) -> dict[str, Any]:
    try:
        definition = json.loads(text)
    except json.JSONDecodeError as exc:
        raise RuleEngineError(f"invalid rule chain: {exc}") from exc
    if not isinstance(definition, dict):
        raise RuleEngineError("rule chain must be a JSON object")
    return definition


class RuleEngine:
    """One rule chain, created from its definition and reloadable in place."""

    def __init__(self, rule_id: str, text: str, config: dict[str, Any]) -> None:
        self.rule_id = rule_id
        self.config = config
        self.definition = _parse_definition(text)
        self.dsl = text

    def reload(self, text: str) -> None:
        """Replace the definition; the old one stays if ``text`` is invalid."""
        self.definition = _parse_definition(text)
        self.dsl = text


class RuleEngineManager:
    """Keeps rule engines keyed by versioned entity label and rule id."""

    def __init__(
        self, domain_cache: Optional[DomainCache] = None, server: Any = None
    ) -> None:
        self._domain_cache = domain_cache
        self._server = server
        self._engines: dict[str, RuleEngine] = {}
        self._global_config: dict[str, Any] = {}
        self._funcs: dict[str, Callable[[Any, Any], Any]] = {}

    def add_rule_engine(self, worker: Worker) -> None:
        """Load the business rules of the worker's entity into engines."""
        if self._domain_cache is None:
            raise RuleEngineError("no domain cache")
        entity = self._domain_cache.entity(worker.path_to_entity())
        if entity is None:
            raise RuleEngineError("entity not found")
        rule_text = getattr(entity, "business_rules", "")
        if not rule_text:
            raise RuleEngineError("entity has no business rules")
        name = getattr(entity, "name", "")
        try:
            rules = _parse_rules(json.loads(rule_text))
        except (json.JSONDecodeError, RuleEngineError) as exc:
            raise RuleEngineError(f"failed to parse rules of {name}: {exc}") from exc
        label = worker.version_entity_label()
        for rule in rules:
            self._update_rule_engine(label, rule)

    def set_global_config(self, config: Optional[dict[str, Any]]) -> None:
        """Set the configuration new engines are created with; None is ignored."""
        if config is None:
            return
        self._global_config = config

    def handle_rule_update(self, param_str: str) -> int:
        """Apply a JSON rule update; return how many rules were applied."""
        try:
            params = RuleUpdateParam.from_json(param_str)
        except RuleEngineError:
            log.warning("failed to parse rule update request")
            raise
        return sum(
            self._update_rule_engine(params.entity_version_label, rule)
            for rule in params.rules
        )

    def _update_rule_engine(self, entity_label: str, rule: BusinessRule) -> bool:
        key = f"{entity_label}_{rule.id}"
        log.debug("updating rule engine %s, rule %s", entity_label, rule.id)
        existing = self._engines.get(key)
        if existing is not None:
            try:
                existing.reload(rule.context)
            except RuleEngineError as exc:
                log.warning("failed to update rule engine %s: %s", entity_label, exc)
                return False
            return True
        try:
            engine = RuleEngine(rule.id, rule.context, copy.deepcopy(self._global_config))
        except RuleEngineError as exc:
            log.warning("failed to create rule engine %s: %s", entity_label, exc)
            return False
        self._engines[key] = engine
        return True

    def engine(self, entity_label: str, rule_id: str) -> Optional[RuleEngine]:
        """Return the engine for a versioned entity label and rule id, or None."""
        return self._engines.get(f"{entity_label}_{rule_id}")

    def register_rule_func(self, name: str, func: RuleFunc) -> None:
        """Register a rule function; it is called with (ctx, msg, server)."""

        def bound(ctx: Any, msg: Any) -> Any:
            return func(ctx, msg, self._server)

        self._funcs[name] = bound

    def rule_func(self, name: str) -> Optional[Callable[[Any, Any], Any]]:
        """Return the registered rule function taking (ctx, msg), or None."""
        return self._funcs.get(name)