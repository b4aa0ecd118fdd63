# evmworker

`evmworker` is the worker side of an event-driven entity platform. A worker
serves one versioned entity of a project. It registers itself with a gateway,
routes the entity's events to built-in, custom or task executors, keeps the
entity's business rules, and migrates the entity's SQLite table to match its
attributes.

The package has no dependencies outside the standard library.

## Installation

```
pip install evmworker
```

To run the test suite:

```
pip install "evmworker[test]"
pytest
```

## Modules

- `evmworker.config`: `WorkerServerConfig`, `load_worker_server_config(text)`
  and `patch_worker_server_config(cfg)`.
  - `load_worker_server_config` parses a JSON object. It ignores unknown keys
    and raises `ValueError` for malformed JSON or values of the wrong type.
  - `patch_worker_server_config` fills empty or zero settings in place with
    defaults. These include server id `worker-1`, version `0.0.1`, public port
    8080, 100 MB caches, five-minute cache TTLs, a 60-second heartbeat gap and
    secret algorithm `NONE`.
  - It also normalises `work_mode`: `QUERY` becomes `Q`, and `COMMAND` or an
    empty value becomes `C`.
- `evmworker.intranet`: the intranet event codes (`IntranetEventType`),
  `is_intranet_event_type`, and the path types `PathToEntity` and
  `PathToEvent`.
  - The path types convert to and from compact `|`-separated string or byte
    arguments.
  - Too few parts give an empty path.
- `evmworker.worker`: the `Worker` record, `new_worker` and
  `worker_from_version_entity_label`.
  - `gen_id` builds an MD5 id from server, project, version, context, entity
    and mode.
  - Workers hold tables of custom and task executors.
  - `table_name` returns `context_entity`.
- `evmworker.rules`: `RuleEngineManager` holds one `RuleEngine` per entity
  label and rule id.
  - `add_rule_engine(worker)` loads the entity's business rules.
  - `handle_rule_update(param_str)` applies a JSON update and returns how many
    rules were applied. It raises `RuleEngineError` on a malformed request.
  - `register_rule_func` binds a rule function to the server, and `rule_func`
    looks it up.
- `evmworker.schema`: `Repository` opens SQLite databases described by shared
  database configurations. It migrates tables from `EntityAttribute` lists.
  - Migration creates the table with `id` and `deleted_at` columns.
  - It adds missing columns and indexes, and leaves existing columns alone.
  - `CustomFieldParser` subclasses create the columns of `custom` attributes.
  - The helper functions are `map_field_type`, `build_column_definition`,
    `index_name` and `field_tag`.
- `evmworker.registry`: `WorkerRegistry` keeps registered and failed workers,
  plugins, interceptors, filters and the routing tables. `EntityEvent` and
  `ExecutorType` describe how an event is executed.
- `evmworker.server`: `TwoWayWorkerServer` is built by
  `new_two_way_worker_server(settings, gateway)` from
  `TwoWayWorkerServerSettings` and a `GatewayClient`.

## Examples

Workers and their labels:

```python
from evmworker.worker import new_worker, worker_from_version_entity_label

worker = new_worker("shop", "0.1.0", "user", "avatar", "", 0)
worker.version_entity_label()   # "shop.user.avatar@0.1.0"
worker.table_name()             # "user_avatar"
worker.rebalance_time           # 3, the default when none is given

same = worker_from_version_entity_label("shop.user.avatar@0.1.0")
(same.project, same.context, same.entity)   # ("shop", "user", "avatar")
```

Routing events to executors:

```python
from evmworker.registry import EntityEvent, ExecutorType, WorkerRegistry

registry = WorkerRegistry({"query": lambda ctx: ({"rows": []}, 200)})
routes = registry.setup_router(worker, [
    EntityEvent(code="list", executor_type=ExecutorType.BUILD_IN_EXECUTOR, executor="query"),
])
routes                                   # ["shop.user.avatar->list@0.1.0"]
registry.find_worker_executor(routes[0]) # the "query" callable
```

Migrating a SQLite table:

```python
import sqlite3
from evmworker.schema import EntityAttribute, Repository

conn = sqlite3.connect(":memory:")
with Repository() as repo:
    repo.migrate_sqlite_table(conn, "user_avatar", [
        EntityAttribute(code="name", field_type="string", indexed=True),
    ])                                   # ["name"]
```

Building a server:

```python
from evmworker.server import TwoWayWorkerServerSettings, new_two_way_worker_server

settings = TwoWayWorkerServerSettings(
    cfg_key="w_1",
    intranet_secret="secret",
    intranet_secret_algor="aes-256",
    gateway_intranet_endpoint="127.0.0.1:10000",
)
server = new_two_way_worker_server(settings, gateway)
server.register_worker(worker)
server.start()
```

`new_two_way_worker_server` fetches the configuration stored under `cfg_key`
from the gateway. It raises `ConfigurationError` in these cases:

- a setting is missing;
- the configuration is absent, empty or unparsable;
- it lacks `public_host` or `public_port`.

`register_worker` raises `RegistrationError` when the gateway does not answer
`SUCCESS`, and keeps the worker so that `retry_failed_workers()` can try again.

## What the package does not do

- **Gateway client.** It has no gateway client. `gateway` is an object you
  supply with these methods:
  - `load_shared_configures`
  - `report_endpoint`
  - `register_worker`, which returns the HTTP status and the body
  - `report_config_used_by`
- **Network servers.** It has no public HTTP server and no intranet server.
  `TwoWayWorkerServer.start()` and `stop()` call `start()` and `stop()` on the
  `public_server` and `intranet_server` objects passed in, if any. The intranet
  server runs in a background thread.
- **Caches.** It has no default cache and no domain cache. Entities, events and
  attributes come from the `domain_cache` object passed in.
- **Built-in executors.** It does not implement the built-in executors
  (`query`, `create`, `update`, `delete`, `restore`, `sql`). Supply them as
  `built_in_executors`.
- **Running rules.** Rule engines parse and store JSON rule chain definitions
  but do not run them.
- **Other databases.** Only SQLite databases are supported.
- **Retries.** Failed workers are retried only when you call
  `retry_failed_workers()`. There is no background retry loop.