"""
Image-store backends for the nested Docker daemon.

This module provides overlay validation, the loop-device fallback and the
selection logic that chooses between them.
"""

from dind_bootstrap.errors import StorageError

from .overlay_manager import OverlayManager
from .volume_manager import LoopDevice, VolumeManager
from .storage_selector import StorageBackend, StorageSelection, StorageSelector

__all__ = ['StorageError', 'OverlayManager', 'LoopDevice', 'VolumeManager',
           'StorageBackend', 'StorageSelection', 'StorageSelector']
