"""
Reporting computations.

Modules:

- :mod:`SalesTracker.data.data` – pandas summaries of a snapshot (daily, weekly, per period and fuel).
"""
