"""
Administrator configuration for the nested runtime bootstrap.
"""

from .bootstrap_config import BootstrapConfig, LogDestination

__all__ = ['BootstrapConfig', 'LogDestination']
