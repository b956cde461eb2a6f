"""
Shared helpers for filesystem and mount-table access.
"""
