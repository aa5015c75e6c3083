"""Self-check: file integrity reconciliation and host remediation scripts.

This package provides:
- reconcile_tree: mirror the reference file tree onto the target tree
- SelfCheckRunner: the guarded, ordered script run and its status document
"""
