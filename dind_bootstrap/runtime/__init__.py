"""
Runtime environment setup for the nested Docker daemon.

This module provides:
- Cgroup hierarchy reconciliation
- Bridge network provisioning and subnet derivation
- Docker daemon launch and readiness supervision
"""

from .cgroup_manager import CgroupManager, CgroupError
from .network_manager import NetworkManager, NetworkError
from .docker_daemon import DockerDaemonManager, DaemonError, DaemonTimeoutError

__all__ = ['CgroupManager', 'CgroupError', 'NetworkManager', 'NetworkError',
           'DockerDaemonManager', 'DaemonError', 'DaemonTimeoutError']
