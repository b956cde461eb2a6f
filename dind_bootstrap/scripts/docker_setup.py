#!/usr/bin/env python3
"""
Docker daemon setup script for nested Docker.

Starts the daemon with explicit bridge and subnet arguments and waits for
it to become ready.
"""

from dind_bootstrap.runtime.docker_daemon import main as run
from dind_bootstrap.utils.logging_utils import setup_logging


def main(argv=None):
    setup_logging()
    return run(argv)


if __name__ == "__main__":
    exit(main())
