import pytest

from evmworker.intranet import IntranetEventType, PathToEntity
from evmworker.registry import (
    EntityEvent,
    ExecutorType,
    RegistrationError,
    WorkerRegistry,
)
from evmworker.worker import new_worker


def _query(ctx):
    return ("query", 200)


def _custom(ctx):
    return ("custom", 200)


def _task(ctx):
    return "done"


class _Plugin:
    def __init__(self, codes):
        self.codes = codes

    def setup(self):
        return None

    def receive_codes(self):
        return self.codes

    def handle(self, ctx, event_type):
        return None


@pytest.fixture
def worker():
    w = new_worker("shop", "1.0", "sales", "order", "", 0)
    w.server_id = "worker-1"
    w.gen_id()
    return w


def test_entity_event_from_dict():
    data = {
        "id": "test-id",
        "entityId": "entity-123",
        "name": "test event",
        "code": "EVENT_001",
        "executorType": 1,
        "executor": "system",
        "delay": 1000,
        "timeout": 5000,
        "params": "{}",
        "mode": "ASYNC",
        "logable": True,
        "authType": 2,
        "deletedAt": 0,
        "deletedBy": "",
        "creator": "admin",
    }
    event = EntityEvent.from_dict(data)
    assert event.entity_id == "entity-123"
    assert event.code == "EVENT_001"
    assert event.executor_type == ExecutorType.BUILD_IN_EXECUTOR
    assert event.delay == 1000
    assert event.timeout == 5000
    assert event.logable is True
    assert event.auth_type == 2
    assert event.creator == "admin"


def test_add_worker_and_lookup(worker):
    registry = WorkerRegistry()
    assert registry.has_worker(worker.id) is False
    registry.add_worker(worker)
    assert registry.has_worker(worker.id) is True
    found = registry.get_worker_by_event(worker.path_to_entity())
    assert found is worker
    assert registry.get_worker_by_event(PathToEntity("shop", "2.0", "sales", "order")) is None


def test_setup_router_routes_all_kinds(worker):
    registry = WorkerRegistry({"query": _query})
    worker.add_custom_executor("pay", _custom)
    worker.add_task_executor("ship", _task)
    events = [
        EntityEvent(code="list", executor="query",
                    executor_type=ExecutorType.BUILD_IN_EXECUTOR),
        EntityEvent(code="pay", executor="pay",
                    executor_type=ExecutorType.CUSTOM_EXECUTOR),
        EntityEvent(code="ship", executor="ship",
                    executor_type=ExecutorType.TASK_EXECUTOR),
    ]
    routed = registry.setup_router(worker, events)
    assert routed == [
        "shop.sales.order->list@1.0",
        "shop.sales.order->pay@1.0",
        "shop.sales.order->ship@1.0",
    ]
    assert registry.find_worker_executor("shop.sales.order->list@1.0") is _query
    assert registry.find_worker_executor("shop.sales.order->pay@1.0") is _custom
    assert registry.find_worker_task_executor("shop.sales.order->ship@1.0") is _task
    assert registry.find_worker_executor("shop.sales.order->ship@1.0") is None


def test_setup_router_skips_missing_executors(worker):
    registry = WorkerRegistry({"query": _query})
    events = [
        EntityEvent(code="a", executor="unknown",
                    executor_type=ExecutorType.BUILD_IN_EXECUTOR),
        EntityEvent(code="b", executor="create",
                    executor_type=ExecutorType.BUILD_IN_EXECUTOR),
        EntityEvent(code="c", executor="nope",
                    executor_type=ExecutorType.CUSTOM_EXECUTOR),
        EntityEvent(code="d", executor="nope",
                    executor_type=ExecutorType.TASK_EXECUTOR),
        EntityEvent(code="e", executor="query", executor_type=99),
    ]
    assert registry.setup_router(worker, events) == []
    assert registry.find_worker_executor("shop.sales.order->a@1.0") is None


def test_setup_router_without_events(worker):
    registry = WorkerRegistry({"query": _query})
    assert registry.setup_router(worker, []) == []


def test_plugins():
    registry = WorkerRegistry()
    plugin = _Plugin([IntranetEventType.G_T_W_RULE_UPDATE,
                      IntranetEventType.G_T_W_RESET_DOMAIN_CACHE])
    registry.register_plugin(plugin)
    assert registry.find_plugin(IntranetEventType.G_T_W_RULE_UPDATE) is plugin
    assert registry.find_plugin(IntranetEventType.G_T_W_RESET_DOMAIN_CACHE) is plugin
    assert registry.find_plugin(IntranetEventType.G_T_W_CHECK_WORKER) is None


def test_interceptors_and_filters_keep_order():
    registry = WorkerRegistry()

    def first(ctx):
        return False

    def second(ctx):
        return True

    def flt(ctx, resp):
        return False

    registry.register_interceptor(first)
    registry.register_interceptor(second)
    registry.register_filter(flt)
    assert list(registry.interceptors) == [first, second]
    assert list(registry.filters) == [flt]


def test_failed_workers(worker):
    registry = WorkerRegistry()
    other = new_worker("shop", "1.0", "sales", "order", "", 0)
    other.id = worker.id
    registry.add_failed_worker(worker)
    registry.add_failed_worker(other)
    assert registry.failed_workers == [worker]
    assert registry.failed_workers[0] is worker
    registry.remove_failed_worker(worker.id)
    assert registry.failed_workers == []
    registry.remove_failed_worker("missing")
    assert registry.failed_workers == []


def test_registration_error_keeps_message():
    error = RegistrationError("gateway refused")
    assert str(error) == "gateway refused"
    assert error.args == ("gateway refused",)