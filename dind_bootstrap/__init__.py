"""
Bootstrap for running a nested Docker daemon inside a container.

Reconciles cgroups, selects a storage backend, moves host networking onto
a bridge and starts the daemon, in that order.
"""

__version__ = "0.3.0"
