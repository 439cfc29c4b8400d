"""SQLite-backed persistence and coordination for fleet resources.

The layer is organized leaves-first:

- ``state_db``: connection lifecycle, ``TransactionScope`` and the error taxonomy.
- ``migrations``: versioned schema evolution recorded in the ``System`` table.
- ``queries`` / ``codecs``: immutable statement builders and blob adapters.
- ``locking`` / ``pending``: the row-lock primitive and pending-work discovery.
- ``transitions``: atomic multi-row state transitions.
- ``repositories`` / ``store``: per-kind CRUD surfaces and the ``FleetStore`` facade.
"""
