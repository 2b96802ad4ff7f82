"""
schemaspine - schema migrations and transactional sessions for embedded SQLite.

- schemaspine.core: connection manager, session scopes, schema snapshots
- schemaspine.core.migrations: revision graph, introspection, batch
  rewrites and the migration runner
- schemaspine.cli: the ``schemaspine`` command
"""

__version__ = "0.1.0"
