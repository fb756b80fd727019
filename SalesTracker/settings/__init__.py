"""
Settings package for SalesTracker.

Modules:

- :mod:`SalesTracker.settings.lib` – Application config (config.json), domain constants and per-user settings defaults.
"""
