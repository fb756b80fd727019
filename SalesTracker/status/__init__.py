"""
Status codes and exceptions.

Modules:

- :mod:`SalesTracker.status.status` – Status enum, user messages and status exceptions.
"""
