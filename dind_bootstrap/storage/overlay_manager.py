#!/usr/bin/env python3
"""
Overlay filesystem smoke test for the nested runtime's image store.

Some kernels accept an overlay mount stacked on another overlay but then
fail every write to it with "No such device". Static detection through
/proc/filesystems cannot see that, so the backend is only trusted after a
real mount-and-write round inside the image store.
"""

import logging
import os
import subprocess

from dind_bootstrap.errors import StepOutcome
from dind_bootstrap.utils.file_utils import ensure_directory, remove_tree
from dind_bootstrap.utils.mount_utils import mount, umount


class OverlayManager:
    """Validates overlay support empirically inside the image store."""

    SCRATCH_NAME = "overlay-smoke-test"
    SCRATCH_LAYERS = ("upper", "lower", "work", "mount")
    PROBE_FILE = "probe"

    def __init__(self, image_store: str = "/var/lib/docker"):
        """
        Initialize overlay manager.

        Args:
            image_store: Directory the nested runtime stores images in
        """
        self.image_store = image_store
        self.scratch_path = os.path.join(image_store, self.SCRATCH_NAME)
        self.logger = logging.getLogger(__name__)

    def layer_path(self, layer: str) -> str:
        return os.path.join(self.scratch_path, layer)

    def mount_options(self):
        return [
            f"lowerdir={self.layer_path('lower')}",
            f"upperdir={self.layer_path('upper')}",
            f"workdir={self.layer_path('work')}",
        ]

    def smoke_test(self) -> StepOutcome:
        """
        Mount an overlay in a scratch tree and write one file through it.

        The scratch tree and its mount are removed afterwards whatever the
        result.

        Returns:
            StepOutcome; ok only if both the mount and the write succeeded
        """
        step = "overlay smoke test"
        mount_dir = self.layer_path("mount")
        mounted = False

        self.logger.info(f"Running overlay smoke test in {self.scratch_path}")

        try:
            remove_tree(self.scratch_path)
            for layer in self.SCRATCH_LAYERS:
                ensure_directory(self.layer_path(layer))

            mount("overlay", "overlay", mount_dir, self.mount_options())
            mounted = True

            with open(os.path.join(mount_dir, self.PROBE_FILE), 'w') as f:
                f.write("overlay smoke test\n")

        except subprocess.CalledProcessError as e:
            detail = (e.stderr or str(e)).strip()
            self.logger.warning(f"Overlay mount failed: {detail}")
            return StepOutcome.failure(step, f"mount failed: {detail}")
        except OSError as e:
            self.logger.warning(f"Overlay write failed: {e}")
            return StepOutcome.failure(step, f"write failed: {e}")
        finally:
            self._cleanup(mounted)

        self.logger.info("Overlay smoke test passed")
        return StepOutcome.success(step)

    def _cleanup(self, mounted: bool) -> None:
        """Unmount and remove the scratch tree."""
        mount_dir = self.layer_path("mount")

        if mounted:
            try:
                umount(mount_dir)
            except (subprocess.CalledProcessError, OSError) as e:
                self.logger.warning(f"Failed to unmount {mount_dir}, detaching lazily: {e}")
                try:
                    umount(mount_dir, lazy=True)
                except (subprocess.CalledProcessError, OSError) as e:
                    self.logger.error(f"Failed to detach {mount_dir}: {e}")

        if not remove_tree(self.scratch_path):
            self.logger.error(f"Failed to remove overlay scratch tree {self.scratch_path}")
