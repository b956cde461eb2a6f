#!/usr/bin/env python3
"""
Cgroup setup script for nested Docker.

Mounts every cgroup hierarchy the container's init belongs to under the
local cgroup root, the same way the full bootstrap does.
"""

from dind_bootstrap.runtime.cgroup_manager import main as run
from dind_bootstrap.utils.logging_utils import setup_logging


def main(argv=None):
    setup_logging()
    return run(argv)


if __name__ == "__main__":
    exit(main())
