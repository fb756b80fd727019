"""
Logging subsystem.

Modules:

- :mod:`SalesTracker.log.log` – Logging setup, in-memory log tank and the Qt message bridge.
"""
