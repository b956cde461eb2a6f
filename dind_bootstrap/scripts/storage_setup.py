#!/usr/bin/env python3
"""
Storage setup script for nested Docker.

This script selects the image-store backend (overlay, or a loop-mounted
ext4 file when overlay does not work) the same way the full bootstrap
does, and prints the storage driver the daemon would be given.
"""

import argparse
import logging

from dind_bootstrap.config.bootstrap_config import BootstrapConfig
from dind_bootstrap.errors import BootstrapError
from dind_bootstrap.storage.storage_selector import StorageSelector
from dind_bootstrap.utils.logging_utils import setup_logging


def main(argv=None):
    """Main function for storage setup."""
    parser = argparse.ArgumentParser(
        description="Select and prepare the nested Docker image store"
    )
    parser.add_argument(
        "--image-store",
        default="/var/lib/docker",
        help="Image store directory (default: /var/lib/docker)"
    )
    parser.add_argument(
        "--loop-file",
        default="/var/lib/docker.img",
        help="Loop device backing file (default: /var/lib/docker.img)"
    )
    parser.add_argument(
        "--detect-only",
        action="store_true",
        help="Only report which backend the kernel supports"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )

    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    logger = logging.getLogger(__name__)

    try:
        config = BootstrapConfig.from_env(image_store=args.image_store, loop_file=args.loop_file)
        selector = StorageSelector.from_config(config)

        if args.detect_only:
            print(f"Kernel backend: {selector.detect_backend().value}")
            return 0

        selection = selector.select()

    except KeyboardInterrupt:
        logger.info("Setup interrupted by user")
        return 1
    except BootstrapError as e:
        logger.error(str(e))
        return 1

    print(f"Storage driver: {selection.storage_driver}")
    if selection.overlay_validated is not None:
        print(f"Overlay smoke test: {'passed' if selection.overlay_validated else 'failed'}")
    if selection.uses_loop_device:
        print(f"Loop device: {selection.loop_device.backing_file} "
              f"({selection.loop_device.size_gb}GiB) on {selection.loop_device.mount_point}")
    return 0


if __name__ == "__main__":
    exit(main())
