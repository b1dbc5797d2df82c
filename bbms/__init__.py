"""
Monitoring backend for the building management system.

Readings and alerts live in an append-only Rubidex ledger. This package
reconciles that log into current per-device state, derives threshold
alerts, and streams deltas to authorized realtime subscribers.
"""
