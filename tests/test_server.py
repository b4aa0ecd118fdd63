import json
import threading
from dataclasses import dataclass

import pytest

from evmworker.registry import EntityEvent, ExecutorType, RegistrationError
from evmworker.server import (
    ConfigurationError,
    TwoWayWorkerServer,
    TwoWayWorkerServerSettings,
    new_two_way_worker_server,
)
from evmworker.worker import new_worker

BASE_CONFIG = {
    "public_host": "127.0.0.1",
    "public_port": 8081,
    "intranet_host": "127.0.0.1",
    "intranet_port": 9001,
}


@dataclass
class SharedCfg:
    key: str
    type: str
    value: str


class FakeGateway:
    def __init__(self, configs=None, reply=(200, "SUCCESS")):
        self.configs = dict(configs or {})
        self.reply = reply
        self.register_error = None
        self.report_error = None
        self.loads = []
        self.endpoints = []
        self.registered = []
        self.used_by = []

    def load_shared_configures(self, keys):
        self.loads.append(list(keys))
        return {k: self.configs[k] for k in keys if k in self.configs}

    def report_endpoint(self, endpoint):
        if self.report_error is not None:
            raise self.report_error
        self.endpoints.append(dict(endpoint))

    def register_worker(self, worker):
        if self.register_error is not None:
            raise self.register_error
        self.registered.append(worker.to_dict())
        return self.reply

    def report_config_used_by(self, cfg_key, worker_id):
        self.used_by.append((cfg_key, worker_id))


class FakeDomainCache:
    def __init__(self, events=()):
        self.events = list(events)

    def entity(self, path):
        return None

    def entity_events(self, path):
        return self.events

    def entity_attrs(self, path):
        return []


def settings(**overrides):
    values = dict(
        cfg_key="w_1",
        intranet_secret="secret",
        intranet_secret_algor="aes-256",
        gateway_intranet_endpoint="127.0.0.1:10000",
    )
    values.update(overrides)
    return TwoWayWorkerServerSettings(**values)


def gateway_with(config):
    return FakeGateway({"w_1": SharedCfg("w_1", "CONFIG", json.dumps(config))})


def test_init_worker_server():
    gateway = gateway_with(BASE_CONFIG)
    server = new_two_way_worker_server(settings(), gateway)
    assert server.cfg_key == "w_1"
    assert server.intranet_secret == "secret"
    assert server.intranet_secret_algor == "aes-256"
    assert server.gateway_intranet_endpoint == "127.0.0.1:10000"
    assert server.server_id == "worker-1"
    assert server.cfg.public_port == 8081
    assert server.cfg.work_mode == "C"


@pytest.mark.parametrize(
    "missing", ["cfg_key", "intranet_secret", "intranet_secret_algor", "gateway_intranet_endpoint"]
)
def test_incomplete_settings_rejected(missing):
    with pytest.raises(ConfigurationError):
        new_two_way_worker_server(settings(**{missing: ""}), gateway_with(BASE_CONFIG))


def test_missing_config_rejected():
    with pytest.raises(ConfigurationError, match="does not exist"):
        new_two_way_worker_server(settings(), FakeGateway())


def test_empty_config_rejected():
    gateway = FakeGateway({"w_1": SharedCfg("w_1", "CONFIG", "")})
    with pytest.raises(ConfigurationError, match="empty"):
        new_two_way_worker_server(settings(), gateway)


def test_invalid_json_rejected():
    gateway = FakeGateway({"w_1": SharedCfg("w_1", "CONFIG", "{not json")})
    with pytest.raises(ConfigurationError, match="parse"):
        new_two_way_worker_server(settings(), gateway)


def test_missing_public_host_rejected():
    config = dict(BASE_CONFIG, public_host="")
    with pytest.raises(ConfigurationError, match="public_host"):
        new_two_way_worker_server(settings(), gateway_with(config))


def test_preloaded_config_served_without_gateway_call():
    gateway = gateway_with(BASE_CONFIG)
    server = new_two_way_worker_server(settings(), gateway)
    calls = len(gateway.loads)
    assert server.shared_configure("w_1").key == "w_1"
    assert len(gateway.loads) == calls


def test_shared_configure_loaded_once_and_cached():
    gateway = gateway_with(BASE_CONFIG)
    gateway.configs["db"] = SharedCfg("db", "DB", "{}")
    server = new_two_way_worker_server(settings(), gateway)
    first = server.shared_configure("db")
    second = server.shared_configure("db")
    assert first is second
    assert gateway.loads.count(["db"]) == 1


def test_shared_configure_unknown_returns_none():
    server = new_two_way_worker_server(settings(), gateway_with(BASE_CONFIG))
    assert server.shared_configure("absent") is None


def test_register_worker_sets_routes_and_reports():
    events = [
        EntityEvent(
            code="create_order",
            executor_type=ExecutorType.CUSTOM_EXECUTOR,
            executor="create",
        )
    ]
    gateway = gateway_with(BASE_CONFIG)
    server = new_two_way_worker_server(
        settings(domain_cache=FakeDomainCache(events)), gateway
    )
    worker = new_worker("demo", "1.0.0", "shop", "order")

    def handler(ctx):
        return ("ok", 200)

    worker.add_custom_executor("create", handler)
    server.register_worker(worker)

    assert len(worker.id) == 32
    assert server.registry.has_worker(worker.id)
    assert worker.mode == "C"
    assert worker.public_endpoint == "127.0.0.1:8081"
    assert worker.intranet_endpoint == "127.0.0.1:9001"
    assert worker.custom_executors == "create"
    assert gateway.registered[0]["serverId"] == "worker-1"
    assert server.registry.find_worker_executor("demo.shop.order->create_order@1.0.0") is handler
    assert ("w_1", worker.id) in gateway.used_by
    assert server.registry.failed_workers == []


def test_query_mode_and_heartbeat_default():
    config = dict(BASE_CONFIG, work_mode="query", heartbeat_report_gap=1)
    server = new_two_way_worker_server(settings(), gateway_with(config))
    worker = new_worker("demo", "1.0.0", "shop", "order")
    server.register_worker(worker)
    assert worker.mode == "Q"
    assert worker.heartbeat_gap == 30


def test_rejected_registration_kept_for_retry():
    gateway = gateway_with(BASE_CONFIG)
    gateway.reply = (200, "DENIED")
    server = new_two_way_worker_server(settings(), gateway)
    worker = new_worker("demo", "1.0.0", "shop", "order")
    with pytest.raises(RegistrationError, match="DENIED"):
        server.register_worker(worker)
    assert [w.id for w in server.registry.failed_workers] == [worker.id]
    assert not server.registry.has_worker(worker.id)

    gateway.reply = (200, "SUCCESS")
    assert server.retry_failed_workers() == 1
    assert server.registry.has_worker(worker.id)
    assert server.registry.failed_workers == []


def test_bad_status_fails_registration():
    gateway = gateway_with(BASE_CONFIG)
    gateway.reply = (500, "SUCCESS")
    server = new_two_way_worker_server(settings(), gateway)
    worker = new_worker("demo", "1.0.0", "shop", "order")
    with pytest.raises(RegistrationError):
        server.register_worker(worker)
    assert len(server.registry.failed_workers) == 1


def test_gateway_error_fails_registration():
    gateway = gateway_with(BASE_CONFIG)
    gateway.register_error = ConnectionError("down")
    server = new_two_way_worker_server(settings(), gateway)
    worker = new_worker("demo", "1.0.0", "shop", "order")
    with pytest.raises(RegistrationError, match="down"):
        server.register_worker(worker)
    assert server.retry_failed_workers() == 0


def test_missing_worker_db_config_fails():
    server = new_two_way_worker_server(settings(), gateway_with(BASE_CONFIG))
    worker = new_worker("demo", "1.0.0", "shop", "order", cfg_key="db_missing")
    with pytest.raises(RegistrationError, match="database"):
        server.register_worker(worker)


class RecordingServer:
    def __init__(self, name, log, started=None):
        self.name = name
        self.log = log
        self.started = started

    def start(self):
        self.log.append(f"{self.name}.start")
        if self.started is not None:
            self.started.set()

    def stop(self):
        self.log.append(f"{self.name}.stop")


def test_start_and_stop():
    calls = []
    started = threading.Event()
    gateway = gateway_with(BASE_CONFIG)
    server = new_two_way_worker_server(
        settings(
            public_server=RecordingServer("public", calls),
            intranet_server=RecordingServer("intranet", calls, started),
        ),
        gateway,
    )
    server.start()
    assert started.wait(5)
    assert "public.start" in calls
    assert gateway.endpoints[0]["publicPort"] == 8081
    assert gateway.endpoints[0]["serverId"] == "worker-1"

    calls.clear()
    server.stop()
    assert calls == ["public.stop", "intranet.stop"]


def test_start_continues_when_report_fails():
    calls = []
    gateway = gateway_with(BASE_CONFIG)
    gateway.report_error = ConnectionError("down")
    server = new_two_way_worker_server(
        settings(public_server=RecordingServer("public", calls)), gateway
    )
    server.start()
    assert calls == ["public.start"]


def test_default_config_when_none_given():
    server = TwoWayWorkerServer(FakeGateway())
    assert server.cfg.server_id == "worker-1"
    assert server.cfg.public_port == 8080