#!/usr/bin/env python3
"""
Bootstrap pipeline stages.

Each stage exposes run(context) -> StageResult. Fatal component errors are
caught here and turned into a failed result; warnings the components
recorded are copied onto the result and the shared context.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

from dind_bootstrap.config.bootstrap_config import BootstrapConfig
from dind_bootstrap.errors import BootstrapError
from dind_bootstrap.runtime.cgroup_manager import CgroupManager, ReconcileReport
from dind_bootstrap.runtime.docker_daemon import DaemonProcess, DockerDaemonManager
from dind_bootstrap.runtime.network_manager import NetworkConfig, NetworkManager
from dind_bootstrap.storage.storage_selector import StorageSelection, StorageSelector

logger = logging.getLogger(__name__)


@dataclass
class StageResult:
    """Result of running one stage."""
    stage: str
    success: bool
    error_message: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    duration: Optional[float] = None


@dataclass
class BootstrapContext:
    """State threaded through the stages."""
    config: BootstrapConfig
    cgroups: Optional[ReconcileReport] = None
    storage: Optional[StorageSelection] = None
    network: Optional[NetworkConfig] = None
    daemon: Optional[DaemonProcess] = None
    daemon_manager: Optional[DockerDaemonManager] = None
    warnings: List[str] = field(default_factory=list)


class Stage:
    """Base class for pipeline stages."""

    name = "stage"

    def run(self, context: BootstrapContext) -> StageResult:
        started = time.monotonic()
        try:
            warnings = self.execute(context) or []
        except BootstrapError as e:
            logger.error(f"Stage {self.name} failed: {e}")
            return StageResult(self.name, False, error_message=str(e),
                               duration=time.monotonic() - started)

        context.warnings.extend(warnings)
        return StageResult(self.name, True, warnings=list(warnings),
                           duration=time.monotonic() - started)

    def execute(self, context: BootstrapContext) -> List[str]:
        """Do the stage's work; return warnings, raise BootstrapError on failure."""
        raise NotImplementedError


class CgroupStage(Stage):
    name = "cgroups"

    def __init__(self, manager: Optional[CgroupManager] = None):
        self.manager = manager

    def execute(self, context):
        manager = self.manager or CgroupManager.from_config(context.config)
        context.cgroups = manager.reconcile()
        return context.cgroups.warnings


class StorageStage(Stage):
    name = "storage"

    def __init__(self, selector: Optional[StorageSelector] = None):
        self.selector = selector

    def execute(self, context):
        selector = self.selector or StorageSelector.from_config(context.config)
        context.storage = selector.select()
        return context.storage.warnings


class NetworkStage(Stage):
    name = "network"

    def __init__(self, manager: Optional[NetworkManager] = None):
        self.manager = manager

    def execute(self, context):
        manager = self.manager or NetworkManager.from_config(context.config)
        context.network = manager.provision()
        return []


class DaemonStage(Stage):
    name = "daemon"

    def __init__(self, manager: Optional[DockerDaemonManager] = None):
        self.manager = manager

    def execute(self, context):
        if context.storage is None or context.network is None:
            raise BootstrapError("Daemon stage needs storage and network results")

        config = context.config
        manager = self.manager or DockerDaemonManager.from_config(config)
        context.daemon_manager = manager
        context.daemon = manager.launch(
            bridge_ip=context.network.bridge_ip,
            fixed_cidr=context.network.derived_subnet,
            storage_driver=context.storage.storage_driver,
            tcp_port=config.tcp_port,
            extra_args=config.daemon_args,
        )
        return context.daemon.warnings
