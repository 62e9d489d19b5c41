"""
Tests for the sync workflows and event engine.

Covers the full resync, incremental upserts, the per-entity lock, the
priority mutation queue and the retrying sync engine.
"""
