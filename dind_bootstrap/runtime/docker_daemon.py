#!/usr/bin/env python3
"""
Docker daemon supervisor for the nested container runtime.

This module builds the daemon's launch arguments from the selected storage
driver and the derived network, starts the daemon in the background and
polls its health-check command until it answers or the deadline passes.
"""

import atexit
import logging
import os
import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, IO, List, Optional, Sequence

import psutil

from dind_bootstrap.config.bootstrap_config import LogDestination
from dind_bootstrap.errors import BootstrapError
from dind_bootstrap.utils.file_utils import ensure_directory, read_int_file, remove_file

logger = logging.getLogger(__name__)


class DaemonError(BootstrapError):
    """Raised when the daemon cannot be started."""
    pass


class DaemonTimeoutError(DaemonError):
    """Raised when the daemon does not become ready before the deadline."""
    pass


class DaemonState(Enum):
    """Readiness of the supervised daemon."""
    STARTING = "starting"
    READY = "ready"
    TIMED_OUT = "timed_out"
    STOPPED = "stopped"


@dataclass
class DaemonProcess:
    """A launched daemon and what is known about it."""
    args: List[str]
    log_destination: LogDestination = LogDestination.STREAM
    state: DaemonState = DaemonState.STARTING
    pid: Optional[int] = None
    started_at: Optional[float] = None
    ready_after: Optional[float] = None
    warnings: List[str] = field(default_factory=list)


class DockerDaemonManager:
    """Starts the nested daemon and waits for it to become ready."""

    DEFAULT_TIMEOUT = 60.0
    DEFAULT_POLL_INTERVAL = 1.0
    STOP_GRACE_PERIOD = 10.0
    HEALTH_CHECK_TIMEOUT = 10.0
    UNIX_SOCKET = "unix:///var/run/docker.sock"

    def __init__(self, daemon_binary: str = "dockerd", cli_binary: str = "docker",
                 pid_file: str = "/var/run/docker.pid",
                 log_destination: LogDestination = LogDestination.STREAM,
                 log_file: str = "/var/log/docker.log",
                 timeout: float = DEFAULT_TIMEOUT,
                 poll_interval: float = DEFAULT_POLL_INTERVAL,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep,
                 register_exit_hook: Callable[[Callable], Any] = atexit.register):
        """
        Initialize Docker daemon manager.

        Args:
            daemon_binary: Daemon executable
            cli_binary: Client executable used for the health check
            pid_file: Pid file the daemon writes
            log_destination: Where daemon output goes
            log_file: Log file used when log_destination is FILE
            timeout: Seconds to wait for readiness
            poll_interval: Seconds between health checks
            clock: Monotonic clock
            sleep: Sleep function
            register_exit_hook: Registers a callable to run at process exit
        """
        self.daemon_binary = daemon_binary
        self.cli_binary = cli_binary
        self.pid_file = pid_file
        self.log_destination = log_destination
        self.log_file = log_file
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.clock = clock
        self.sleep = sleep
        self.register_exit_hook = register_exit_hook

        self.daemon_process: Optional[subprocess.Popen] = None
        self.daemon: Optional[DaemonProcess] = None
        self._log_handle: Optional[IO] = None
        self._hook_registered = False

    @classmethod
    def from_config(cls, config, **kwargs) -> "DockerDaemonManager":
        return cls(
            daemon_binary=config.daemon_binary,
            cli_binary=config.cli_binary,
            pid_file=config.pid_file,
            log_destination=config.log_destination,
            log_file=config.log_file,
            **kwargs,
        )

    def remove_stale_pid_file(self) -> bool:
        """
        Remove a pid file left behind by an earlier daemon.

        Returns:
            True if a pid file was removed
        """
        if not os.path.exists(self.pid_file):
            return False

        pid = read_int_file(self.pid_file)
        if pid is not None and psutil.pid_exists(pid):
            logger.warning(f"Pid file {self.pid_file} names live process {pid}; removing it anyway")

        removed = remove_file(self.pid_file)
        if removed:
            logger.info(f"Removed stale pid file {self.pid_file}")
        return removed

    def build_args(self, bridge_ip: str, fixed_cidr: str, storage_driver: str,
                   tcp_port: Optional[int] = None,
                   extra_args: Sequence[str] = ()) -> List[str]:
        """
        Assemble the daemon's command-line arguments.

        Args:
            bridge_ip: Bridge address in CIDR form
            fixed_cidr: Subnet for nested containers
            storage_driver: Storage driver name
            tcp_port: Also listen on this TCP port when given
            extra_args: Administrator arguments, appended verbatim

        Returns:
            Argument list, without the daemon binary
        """
        args = [
            f"--bip={bridge_ip}",
            f"--fixed-cidr={fixed_cidr}",
            f"--storage-driver={storage_driver}",
        ]
        if tcp_port is not None:
            args.extend(["-H", f"tcp://0.0.0.0:{tcp_port}", "-H", self.UNIX_SOCKET])
        args.extend(extra_args)
        return args

    def _open_output(self):
        if self.log_destination is not LogDestination.FILE:
            return None, None

        try:
            ensure_directory(os.path.dirname(self.log_file) or ".")
            self._log_handle = open(self.log_file, 'a')
        except OSError as e:
            raise DaemonError(f"Cannot open daemon log file {self.log_file}: {e}")
        return self._log_handle, subprocess.STDOUT

    def start(self, args: List[str]) -> DaemonProcess:
        """
        Start the daemon in the background.

        The daemon runs in its own session with inherited descriptors
        closed, so it holds no open files of this process.

        Raises:
            DaemonError: If the daemon binary cannot be executed
        """
        cmd = [self.daemon_binary] + list(args)
        stdout, stderr = self._open_output()

        logger.info(f"Starting Docker daemon: {' '.join(cmd)}")
        if self.log_destination is LogDestination.FILE:
            logger.info(f"Daemon output goes to {self.log_file}")

        try:
            self.daemon_process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=stdout,
                stderr=stderr,
                close_fds=True,
                start_new_session=True,
            )
        except OSError as e:
            self._close_log()
            raise DaemonError(f"Failed to start {self.daemon_binary}: {e}")

        self.daemon = DaemonProcess(
            args=list(args),
            log_destination=self.log_destination,
            pid=self.daemon_process.pid,
            started_at=self.clock(),
        )
        logger.info(f"Docker daemon started (PID: {self.daemon.pid})")
        return self.daemon

    def check_health(self) -> bool:
        """Run the health-check command once."""
        try:
            result = subprocess.run(
                [self.cli_binary, "info"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=self.HEALTH_CHECK_TIMEOUT,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"Health check did not complete: {e}")
            return False
        return result.returncode == 0

    def wait_until_ready(self) -> float:
        """
        Poll the health check until it succeeds or the deadline passes.

        Returns:
            Seconds it took for the daemon to become ready

        Raises:
            DaemonTimeoutError: If the deadline passes first
        """
        start = self.clock()
        deadline = start + self.timeout
        exit_reported = False

        while True:
            if self.check_health():
                elapsed = self.clock() - start
                if self.daemon:
                    self.daemon.state = DaemonState.READY
                    self.daemon.ready_after = elapsed
                logger.info(f"Docker daemon ready after {elapsed:.1f}s")
                return elapsed

            if not exit_reported and self.daemon_process is not None \
                    and self.daemon_process.poll() is not None:
                message = f"Docker daemon exited with code {self.daemon_process.returncode}"
                logger.warning(message)
                if self.daemon:
                    self.daemon.warnings.append(message)
                exit_reported = True

            now = self.clock()
            if now >= deadline:
                if self.daemon:
                    self.daemon.state = DaemonState.TIMED_OUT
                raise DaemonTimeoutError(
                    f"Docker daemon did not become ready within {self.timeout:g}s"
                )

            self.sleep(min(self.poll_interval, deadline - now))

    def launch(self, bridge_ip: str, fixed_cidr: str, storage_driver: str,
               tcp_port: Optional[int] = None,
               extra_args: Sequence[str] = ()) -> DaemonProcess:
        """
        Start the daemon and block until it is ready.

        On timeout the daemon is left running for diagnosis. Once ready, a
        hook is registered to stop it when this process exits.

        Raises:
            DaemonError: If the daemon cannot be started
            DaemonTimeoutError: If it does not become ready in time
        """
        self.remove_stale_pid_file()
        args = self.build_args(bridge_ip, fixed_cidr, storage_driver, tcp_port, extra_args)
        daemon = self.start(args)
        self.wait_until_ready()

        if not self._hook_registered:
            self.register_exit_hook(self.stop_daemon)
            self._hook_registered = True
        return daemon

    def stop_daemon(self) -> bool:
        """
        Stop the daemon and anything it spawned.

        Returns:
            True if the daemon is gone afterwards
        """
        if self.daemon_process is None:
            return True

        try:
            if self.daemon_process.poll() is None:
                logger.info("Stopping Docker daemon...")
                process = psutil.Process(self.daemon_process.pid)
                children = process.children(recursive=True)

                process.terminate()
                gone, alive = psutil.wait_procs([process], timeout=self.STOP_GRACE_PERIOD)
                if alive:
                    logger.warning("Docker daemon did not stop gracefully, forcing termination")
                    process.kill()

                # Reap the daemon's children (containerd, shims) if they outlived it
                for child in children:
                    if child.is_running():
                        child.kill()
                psutil.wait_procs(children, timeout=self.STOP_GRACE_PERIOD)

            self.daemon_process.wait(timeout=self.STOP_GRACE_PERIOD)
            logger.info("Docker daemon stopped")
        except psutil.NoSuchProcess:
            logger.info("Docker daemon already exited")
        except (psutil.Error, subprocess.TimeoutExpired) as e:
            logger.error(f"Failed to stop Docker daemon: {e}")
            return False
        finally:
            self._close_log()

        if self.daemon:
            self.daemon.state = DaemonState.STOPPED
        self.daemon_process = None
        return True

    def _close_log(self) -> None:
        if self._log_handle is not None:
            self._log_handle.close()
            self._log_handle = None

    def get_daemon_status(self) -> Dict[str, Any]:
        """
        Get Docker daemon status information.

        Returns:
            Dictionary containing daemon status
        """
        status = {
            "running": False,
            "pid": None,
            "uptime": None,
            "state": self.daemon.state.value if self.daemon else None,
            "health": "unknown",
        }

        if self.daemon_process and self.daemon_process.poll() is None:
            status["running"] = True
            status["pid"] = self.daemon_process.pid
            try:
                process = psutil.Process(self.daemon_process.pid)
                status["uptime"] = time.time() - process.create_time()
            except psutil.Error:
                pass

        status["health"] = "healthy" if self.check_health() else "unhealthy"
        return status


def main(argv: Optional[List[str]] = None):
    """Main function for command-line usage."""
    import argparse
    import json

    parser = argparse.ArgumentParser(description="Docker daemon supervisor for nested Docker")
    parser.add_argument("--bip", help="Bridge address in CIDR form")
    parser.add_argument("--fixed-cidr", help="Subnet for nested containers")
    parser.add_argument("--storage-driver", default="overlay", help="Storage driver")
    parser.add_argument("--timeout", type=float, default=DockerDaemonManager.DEFAULT_TIMEOUT,
                        help="Seconds to wait for readiness")
    parser.add_argument("--status", action="store_true", help="Show daemon health and exit")
    parser.add_argument("extra", nargs="*", help="Extra daemon arguments")

    args = parser.parse_args(argv)

    manager = DockerDaemonManager(timeout=args.timeout)

    if args.status:
        print(f"Docker daemon status: {json.dumps(manager.get_daemon_status(), indent=2)}")
        return 0

    if not args.bip or not args.fixed_cidr:
        parser.error("--bip and --fixed-cidr are required to start the daemon")

    try:
        manager.launch(args.bip, args.fixed_cidr, args.storage_driver, extra_args=args.extra)
    except DaemonError as e:
        logger.error(str(e))
        return 1

    print("Docker daemon is ready")
    try:
        manager.daemon_process.wait()
    except KeyboardInterrupt:
        print("\nStopping Docker daemon...")
        manager.stop_daemon()
    return 0


if __name__ == "__main__":
    exit(main())
