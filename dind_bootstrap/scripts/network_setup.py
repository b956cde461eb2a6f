#!/usr/bin/env python3
"""
Network setup script for nested Docker.

Moves the host address onto the bridge and prints the derived container
subnet. Use --derive to compute a subnet without touching the host.
"""

from dind_bootstrap.runtime.network_manager import main as run
from dind_bootstrap.utils.logging_utils import setup_logging


def main(argv=None):
    setup_logging()
    return run(argv)


if __name__ == "__main__":
    exit(main())
