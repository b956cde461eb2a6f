#!/usr/bin/env python3
"""
Nested Docker bootstrap.

Prepares the container for a nested Docker daemon, starts it, waits for it
to become ready and then runs the given command (or an interactive shell).
The daemon is stopped when the command exits.

Configuration comes from the environment: LOG, DOCKER_LOG_FILE, LOOP_SIZE,
DOCKER_NETWORK_PREFIX, DOCKER_NETWORK_OFFSET, DOCKER_DAEMON_ARGS and PORT.
"""

import argparse
import json
import logging
import os
import signal
import subprocess
import sys
from typing import List, Optional

from dind_bootstrap.config.bootstrap_config import BootstrapConfig
from dind_bootstrap.errors import BootstrapError
from dind_bootstrap.orchestrator.bootstrap_orchestrator import BootstrapOrchestrator
from dind_bootstrap.utils.logging_utils import setup_logging

logger = logging.getLogger(__name__)

DEFAULT_SHELL = "/bin/bash"


def _exit_on_sigterm(signum, frame):
    # SystemExit unwinds through atexit, which stops the daemon
    sys.exit(128 + signum)


def _ignore_signal(signum, frame):
    pass


def hand_off(command: List[str]) -> int:
    """
    Run the caller's command, or an interactive shell.

    While the command runs, SIGINT and SIGQUIT from the terminal reach it
    but do not stop the bootstrap. The handlers are Python callables rather
    than SIG_IGN, so the command starts with the default dispositions.

    Returns:
        The command's exit code
    """
    if not command:
        command = [os.environ.get("SHELL") or DEFAULT_SHELL]

    logger.info(f"Handing off to: {' '.join(command)}")
    saved = {signum: signal.signal(signum, _ignore_signal)
             for signum in (signal.SIGINT, signal.SIGQUIT)}
    try:
        return subprocess.call(command)
    except OSError as e:
        logger.error(f"Cannot run {command[0]}: {e}")
        return 127
    finally:
        for signum, handler in saved.items():
            if handler is not None:
                signal.signal(signum, handler)


def main(argv: Optional[List[str]] = None) -> int:
    """Main function for the bootstrap."""
    parser = argparse.ArgumentParser(
        description="Prepare this container for a nested Docker daemon and start it"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--log-file", help="Also write bootstrap logs to this file")
    parser.add_argument("--show-config", action="store_true",
                        help="Print the effective configuration and exit")
    parser.add_argument("command", nargs=argparse.REMAINDER,
                        help="Command to run once the daemon is ready")

    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.log_file)

    try:
        config = BootstrapConfig.from_env()
    except BootstrapError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    if args.show_config:
        print(json.dumps(config.to_dict(), indent=2))
        return 0

    signal.signal(signal.SIGTERM, _exit_on_sigterm)

    try:
        result = BootstrapOrchestrator(config).run()
    except KeyboardInterrupt:
        logger.info("Bootstrap interrupted by user")
        return 1

    if not result.success:
        failed = result.failed_stage
        logger.error(f"Bootstrap failed in {failed.stage}: {failed.error_message}")
        return 1

    command = args.command
    if command and command[0] == "--":
        command = command[1:]
    return hand_off(command)


if __name__ == "__main__":
    exit(main())
