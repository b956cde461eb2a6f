#!/usr/bin/env python3
"""
Bootstrap configuration built from the process environment.

Every administrator-tunable value is collected here once at startup and
passed to each bootstrap stage. Paths and binaries are plain fields so
tests can point them at temporary directories.
"""

import ipaddress
import os
import shlex
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple

from dind_bootstrap.errors import ConfigError


class LogDestination(Enum):
    """Where the daemon's output goes."""
    STREAM = "stream"
    FILE = "file"


# Environment variable names
ENV_LOG = "LOG"
ENV_LOG_FILE = "DOCKER_LOG_FILE"
ENV_LOOP_SIZE = "LOOP_SIZE"
ENV_NETWORK_PREFIX = "DOCKER_NETWORK_PREFIX"
ENV_NETWORK_OFFSET = "DOCKER_NETWORK_OFFSET"
ENV_DAEMON_ARGS = "DOCKER_DAEMON_ARGS"
ENV_PORT = "PORT"

DEFAULT_LOOP_SIZE_GB = 5
DEFAULT_NETWORK_PREFIX = 24
DEFAULT_NETWORK_OFFSET = "0.0.1.0"


@dataclass
class BootstrapConfig:
    """Configuration for one bootstrap run."""
    log_destination: LogDestination = LogDestination.STREAM
    log_file: str = "/var/log/docker.log"
    loop_size_gb: int = DEFAULT_LOOP_SIZE_GB
    network_prefix: int = DEFAULT_NETWORK_PREFIX
    network_offset: str = DEFAULT_NETWORK_OFFSET
    daemon_args: List[str] = field(default_factory=list)
    tcp_port: Optional[int] = None

    # Host layout
    cgroup_root: str = "/sys/fs/cgroup"
    cgroup_membership_file: str = "/proc/1/cgroup"
    securityfs_path: str = "/sys/kernel/security"
    filesystems_file: str = "/proc/filesystems"
    mounts_file: str = "/proc/mounts"
    image_store: str = "/var/lib/docker"
    loop_file: str = "/var/lib/docker.img"
    pid_file: str = "/var/run/docker.pid"

    # Network devices
    bridge_name: str = "docker0"
    primary_interface: str = "eth0"

    # Runtime binaries
    daemon_binary: str = "dockerd"
    cli_binary: str = "docker"

    def __post_init__(self):
        if self.loop_size_gb <= 0:
            raise ConfigError(f"Loop device size must be positive: {self.loop_size_gb}")
        if not 0 <= self.network_prefix <= 32:
            raise ConfigError(f"Network prefix length out of range: {self.network_prefix}")
        if self.tcp_port is not None and not 0 < self.tcp_port < 65536:
            raise ConfigError(f"TCP port out of range: {self.tcp_port}")
        # Raises ConfigError for a malformed offset
        self.offset_octets

    @property
    def offset_octets(self) -> Tuple[int, int, int, int]:
        """Network offset as four integer octets."""
        try:
            return tuple(ipaddress.IPv4Address(self.network_offset).packed)
        except ValueError as e:
            raise ConfigError(f"Invalid network offset {self.network_offset!r}: {e}")

    @property
    def log_to_file(self) -> bool:
        return self.log_destination is LogDestination.FILE

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "BootstrapConfig":
        """
        Build configuration from environment variables.

        Args:
            environ: Environment mapping (defaults to os.environ)
            overrides: Field values that take precedence over the environment

        Returns:
            BootstrapConfig instance

        Raises:
            ConfigError: If a variable holds an invalid value
        """
        if environ is None:
            environ = os.environ

        values = {}

        log = environ.get(ENV_LOG, "").strip().lower()
        values["log_destination"] = LogDestination.FILE if log == "file" else LogDestination.STREAM

        if environ.get(ENV_LOG_FILE):
            values["log_file"] = environ[ENV_LOG_FILE]

        values["loop_size_gb"] = _parse_int(environ, ENV_LOOP_SIZE, DEFAULT_LOOP_SIZE_GB)
        values["network_prefix"] = _parse_int(environ, ENV_NETWORK_PREFIX, DEFAULT_NETWORK_PREFIX)
        values["network_offset"] = environ.get(ENV_NETWORK_OFFSET) or DEFAULT_NETWORK_OFFSET

        try:
            values["daemon_args"] = shlex.split(environ.get(ENV_DAEMON_ARGS, ""))
        except ValueError as e:
            raise ConfigError(f"Cannot parse {ENV_DAEMON_ARGS}: {e}")

        if environ.get(ENV_PORT):
            values["tcp_port"] = _parse_int(environ, ENV_PORT, None)

        values.update(overrides)
        return cls(**values)

    def to_dict(self) -> Dict:
        """Return a JSON-serializable view of the configuration."""
        data = asdict(self)
        data["log_destination"] = self.log_destination.value
        return data


def _parse_int(environ: Mapping[str, str], name: str, default: Optional[int]) -> Optional[int]:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
