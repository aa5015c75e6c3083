"""Crash-resilient, cross-process JSON state documents.

This package provides:
- FileLock: exclusive-create lock file with stale-lock reclamation
- StateStore: lock-guarded, atomically persisted JSON document with a local cache
"""
