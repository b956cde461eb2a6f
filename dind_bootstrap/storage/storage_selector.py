#!/usr/bin/env python3
"""
Storage backend selection for the nested runtime.

Prefers overlay, then aufs, based on the kernel's filesystem list. Overlay
is only trusted after the smoke test; when it fails (or when aufs was the
only choice) the image store is moved onto a loop-mounted ext4 file. The
fallback never goes back to try aufs.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from dind_bootstrap.errors import StorageError
from dind_bootstrap.storage.overlay_manager import OverlayManager
from dind_bootstrap.storage.volume_manager import LoopDevice, VolumeManager
from dind_bootstrap.utils.file_utils import ensure_directory
from dind_bootstrap.utils.mount_utils import supported_filesystems

logger = logging.getLogger(__name__)


class StorageBackend(Enum):
    """Storage backends, in order of preference."""
    OVERLAY = "overlay"
    AUFS = "aufs"


@dataclass
class StorageSelection:
    """Outcome of backend selection."""
    backend: StorageBackend
    overlay_validated: Optional[bool] = None
    loop_device: Optional[LoopDevice] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def storage_driver(self) -> str:
        """Driver name handed to the daemon."""
        return self.backend.value

    @property
    def uses_loop_device(self) -> bool:
        return self.loop_device is not None


class StorageSelector:
    """Chooses and prepares the image-store backend."""

    CANDIDATES = [StorageBackend.OVERLAY, StorageBackend.AUFS]

    def __init__(self, image_store: str = "/var/lib/docker",
                 loop_file: str = "/var/lib/docker.img",
                 loop_size_gb: int = 5,
                 filesystems_file: str = "/proc/filesystems",
                 mounts_file: str = "/proc/mounts"):
        self.image_store = image_store
        self.filesystems_file = filesystems_file
        self.overlay_manager = OverlayManager(image_store)
        self.volume_manager = VolumeManager(
            LoopDevice(backing_file=loop_file, size_gb=loop_size_gb, mount_point=image_store),
            mounts_file=mounts_file,
        )

    @classmethod
    def from_config(cls, config) -> "StorageSelector":
        return cls(
            image_store=config.image_store,
            loop_file=config.loop_file,
            loop_size_gb=config.loop_size_gb,
            filesystems_file=config.filesystems_file,
            mounts_file=config.mounts_file,
        )

    def detect_backend(self) -> StorageBackend:
        """
        Pick the preferred backend the kernel supports.

        Raises:
            StorageError: If neither overlay nor aufs is supported
        """
        available = supported_filesystems(self.filesystems_file)
        for candidate in self.CANDIDATES:
            if candidate.value in available:
                logger.info(f"Kernel supports {candidate.value} filesystem")
                return candidate

        raise StorageError("No supported filesystem found (need overlay or aufs)")

    def select(self) -> StorageSelection:
        """
        Select a backend and make sure the image store is writable.

        Returns:
            StorageSelection for the daemon's launch arguments

        Raises:
            StorageError: If no backend is supported or the loop fallback fails
        """
        backend = self.detect_backend()
        selection = StorageSelection(backend=backend)

        ensure_directory(self.image_store)

        if backend is StorageBackend.OVERLAY:
            outcome = self.overlay_manager.smoke_test()
            selection.overlay_validated = outcome.ok
            if outcome.ok:
                logger.info(f"Using overlay storage directly in {self.image_store}")
                return selection

            message = f"Overlay unusable in {self.image_store} ({outcome.detail}); using a loop device"
            logger.warning(message)
            selection.warnings.append(message)

        selection.loop_device = self.volume_manager.setup()
        logger.info(
            f"Image store on loop device {selection.loop_device.backing_file}, "
            f"storage driver {selection.storage_driver}"
        )
        return selection
