#!/usr/bin/env python3
"""
Loop-device backend for the nested runtime's image store.

When overlay cannot be trusted on the host filesystem, the image store is
moved onto an ext4 filesystem living in a fixed-size regular file that is
loop-mounted over the store directory. The backing file survives restarts
and is never reformatted once it exists.
"""

import logging
import os
import subprocess
from dataclasses import dataclass
from typing import List, Optional

from dind_bootstrap.errors import StorageError
from dind_bootstrap.utils.file_utils import ensure_directory, read_file_lines, remove_file
from dind_bootstrap.utils.mount_utils import mount, mount_source

GIB = 1024 ** 3


@dataclass
class LoopDevice:
    """A file-backed filesystem mounted over a directory."""
    backing_file: str = "/var/lib/docker.img"
    size_gb: int = 5
    mount_point: str = "/var/lib/docker"
    fstype: str = "ext4"

    @property
    def exists(self) -> bool:
        return os.path.isfile(self.backing_file)

    @property
    def size_bytes(self) -> int:
        return self.size_gb * GIB

    def mkfs_command(self) -> List[str]:
        return [f"mkfs.{self.fstype}", "-F", "-q", self.backing_file]


class VolumeManager:
    """Creates, formats and mounts the loop-device image store."""

    def __init__(self, device: LoopDevice, mounts_file: str = "/proc/mounts",
                 sys_block: str = "/sys/block"):
        """
        Initialize volume manager.

        Args:
            device: Loop device description
            mounts_file: Kernel mount table
            sys_block: Block device directory of sysfs
        """
        self.device = device
        self.mounts_file = mounts_file
        self.sys_block = sys_block
        self.logger = logging.getLogger(__name__)

    def create_backing_file(self) -> bool:
        """
        Create and format the backing file unless it already exists.

        Returns:
            True if a new file was created, False if an existing one was kept

        Raises:
            StorageError: If the file cannot be created or formatted
        """
        if self.device.exists:
            self.logger.info(f"Reusing existing loop backing file {self.device.backing_file}")
            return False

        self.logger.info(
            f"Creating {self.device.size_gb}GiB loop backing file {self.device.backing_file}"
        )

        try:
            ensure_directory(os.path.dirname(self.device.backing_file) or ".")
            with open(self.device.backing_file, 'wb') as f:
                f.truncate(self.device.size_bytes)
        except OSError as e:
            remove_file(self.device.backing_file)
            raise StorageError(f"Failed to create loop backing file {self.device.backing_file}: {e}")

        try:
            subprocess.run(self.device.mkfs_command(), capture_output=True, text=True, check=True)
        except (subprocess.CalledProcessError, OSError) as e:
            # An unformatted file would be reused as-is on the next run
            remove_file(self.device.backing_file)
            detail = getattr(e, "stderr", None) or str(e)
            raise StorageError(f"Failed to format {self.device.backing_file}: {detail.strip()}")

        self.logger.info(f"Formatted {self.device.backing_file} as {self.device.fstype}")
        return True

    def loop_backing_file(self, source: str) -> Optional[str]:
        """
        Look up the file behind a loop device such as /dev/loop3.

        Returns:
            Backing file path, or None if source is not a loop device
        """
        name = os.path.basename(source)
        if not name.startswith("loop"):
            return None
        lines = read_file_lines(os.path.join(self.sys_block, name, "loop", "backing_file"))
        return lines[0] if lines else None

    def is_loop_mounted(self) -> bool:
        """True if the store is already a loop mount of our backing file."""
        source = mount_source(self.device.mount_point, self.mounts_file)
        if source is None:
            return False

        backing_file = self.loop_backing_file(source)
        if backing_file is None:
            self.logger.info(
                f"{self.device.mount_point} is a {source} mount, mounting the loop device over it"
            )
            return False
        if os.path.realpath(backing_file) != os.path.realpath(self.device.backing_file):
            self.logger.info(f"{self.device.mount_point} is backed by {backing_file}, mounting over it")
            return False
        return True

    def mount_device(self) -> bool:
        """
        Loop-mount the backing file over the image store.

        Any other mount at the store (a bind-mounted volume, say) is covered
        by the loop mount.

        Returns:
            True if mounted now, False if the backing file was already
            mounted there

        Raises:
            StorageError: If the mount fails
        """
        if self.is_loop_mounted():
            self.logger.info(f"{self.device.backing_file} is already mounted on {self.device.mount_point}")
            return False

        ensure_directory(self.device.mount_point)

        try:
            mount(self.device.fstype, self.device.backing_file, self.device.mount_point, ["loop"])
        except (subprocess.CalledProcessError, OSError) as e:
            detail = getattr(e, "stderr", None) or str(e)
            raise StorageError(
                f"Failed to loop-mount {self.device.backing_file} on "
                f"{self.device.mount_point}: {detail.strip()}"
            )

        self.logger.info(f"Loop-mounted {self.device.backing_file} on {self.device.mount_point}")
        return True

    def setup(self) -> LoopDevice:
        """
        Prepare the loop-device image store.

        Raises:
            StorageError: If any step fails
        """
        self.create_backing_file()
        self.mount_device()
        return self.device
