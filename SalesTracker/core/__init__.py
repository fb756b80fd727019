"""
Core package for SalesTracker providing the local-first storage and sync engine.

This package includes:

- :mod:`SalesTracker.core.database` – Local SQLite key-value store.
- :mod:`SalesTracker.core.service` – HTTP client of the remote store and the background worker thread.
- :mod:`SalesTracker.core.auth` – Identity list and credential resolution.
- :mod:`SalesTracker.core.session` – Active identity and snapshot mutations.
- :mod:`SalesTracker.core.sync` – Debounced pushes, pulls and snapshot merging.
- :mod:`SalesTracker.core.transfer` – Backup and transfer format.
- :mod:`SalesTracker.core.app` – Wires the components together.
"""
