"""Worker runtime: configuration, intranet paths, workers, rule engines, SQLite schema migration, routing registry and the two-way worker server."""

__version__ = "0.1.0"

__all__ = ["config", "intranet", "worker", "rules", "schema", "registry", "server"]