#!/usr/bin/env python3
"""
Cgroup hierarchy reconciler for the nested container runtime.

This module mirrors the parent's cgroup subsystem layout into the local
cgroup root. Nested runtimes that find a subsystem mounted at a different
path than the parent used fail with errors such as "no ns_cgroup option
specified", so every hierarchy listed in the membership record is mounted
under its own name, exactly as the kernel reports it.
"""

import logging
import os
import subprocess
from dataclasses import dataclass, field
from typing import List, Optional

from dind_bootstrap.errors import BootstrapError, StepOutcome
from dind_bootstrap.utils.file_utils import read_file_lines
from dind_bootstrap.utils.mount_utils import is_mounted, mount, supported_filesystems

logger = logging.getLogger(__name__)


class CgroupError(BootstrapError):
    """Raised when the cgroup hierarchy cannot be reconciled."""
    pass


@dataclass
class CgroupSubsystem:
    """A cgroup hierarchy as listed in a membership record."""
    name: str
    root: str = "/sys/fs/cgroup"

    NAMED_PREFIX = "name="
    INVERTED_CPU_PAIR = "cpuacct,cpu"
    CANONICAL_CPU_PAIR = "cpu,cpuacct"

    @property
    def path(self) -> str:
        return os.path.join(self.root, self.name)

    @property
    def is_named(self) -> bool:
        """True for controller-less hierarchies such as name=systemd."""
        return self.name.startswith(self.NAMED_PREFIX)

    @property
    def bare_name(self) -> str:
        if self.is_named:
            return self.name[len(self.NAMED_PREFIX):]
        return self.name

    @property
    def is_inverted_cpu_pair(self) -> bool:
        return self.name == self.INVERTED_CPU_PAIR

    @property
    def controllers(self) -> List[str]:
        return self.name.split(",")


@dataclass
class ReconcileReport:
    """What a reconciliation run did."""
    subsystems: List[CgroupSubsystem] = field(default_factory=list)
    mounted: List[str] = field(default_factory=list)
    links: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    securityfs_mounted: bool = False

    def warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)


class CgroupManager:
    """Mounts the cgroup hierarchies the current process belongs to."""

    DEFAULT_CGROUP_ROOT = "/sys/fs/cgroup"
    DEFAULT_MEMBERSHIP_FILE = "/proc/1/cgroup"
    DEFAULT_SECURITYFS_PATH = "/sys/kernel/security"
    TMPFS_OPTIONS = ["uid=0", "gid=0", "mode=0755"]

    def __init__(self, cgroup_root: str = DEFAULT_CGROUP_ROOT,
                 membership_file: str = DEFAULT_MEMBERSHIP_FILE,
                 securityfs_path: str = DEFAULT_SECURITYFS_PATH,
                 filesystems_file: str = "/proc/filesystems",
                 mounts_file: str = "/proc/mounts"):
        """
        Initialize cgroup manager.

        Args:
            cgroup_root: Local cgroup root to populate
            membership_file: Cgroup membership record to mirror
            securityfs_path: Mount point for the security module filesystem
            filesystems_file: Kernel filesystem list
            mounts_file: Kernel mount table
        """
        self.cgroup_root = cgroup_root
        self.membership_file = membership_file
        self.securityfs_path = securityfs_path
        self.filesystems_file = filesystems_file
        self.mounts_file = mounts_file

    @classmethod
    def from_config(cls, config) -> "CgroupManager":
        return cls(
            cgroup_root=config.cgroup_root,
            membership_file=config.cgroup_membership_file,
            securityfs_path=config.securityfs_path,
            filesystems_file=config.filesystems_file,
            mounts_file=config.mounts_file,
        )

    def read_subsystems(self) -> List[CgroupSubsystem]:
        """
        Read hierarchies from the membership record.

        Each line is "hierarchy-id:subsystems:path". Lines with an empty
        subsystem field (the unified cgroup v2 entry) are skipped.

        Returns:
            Subsystems in record order, without duplicates
        """
        subsystems = []
        seen = set()
        for line in read_file_lines(self.membership_file):
            parts = line.split(":", 2)
            if len(parts) < 3 or not parts[1]:
                continue
            name = parts[1]
            if name in seen:
                continue
            seen.add(name)
            subsystems.append(CgroupSubsystem(name=name, root=self.cgroup_root))
        return subsystems

    def ensure_cgroup_root(self) -> bool:
        """
        Make sure the cgroup root exists and is a tmpfs mount.

        Returns:
            True if a tmpfs was mounted, False if one was already there

        Raises:
            CgroupError: If the tmpfs mount fails
        """
        os.makedirs(self.cgroup_root, exist_ok=True)

        if self._is_mounted(self.cgroup_root):
            logger.info(f"Cgroup root already mounted at {self.cgroup_root}")
            return False

        try:
            mount("tmpfs", "cgroup", self.cgroup_root, self.TMPFS_OPTIONS)
        except (subprocess.CalledProcessError, OSError) as e:
            raise CgroupError(
                f"Could not make a tmpfs mount at {self.cgroup_root}. "
                f"Did you use --privileged? ({_stderr(e)})"
            )

        logger.info(f"Mounted tmpfs at {self.cgroup_root}")
        return True

    def mount_securityfs(self) -> StepOutcome:
        """
        Mount the security module filesystem if the kernel offers it.

        Returns:
            StepOutcome; a failure means the host lacks a capability
        """
        step = f"mount securityfs at {self.securityfs_path}"

        if "securityfs" not in supported_filesystems(self.filesystems_file):
            logger.debug("securityfs not supported by kernel, skipping")
            return StepOutcome.success(step)
        if not os.path.isdir(self.securityfs_path):
            logger.debug(f"{self.securityfs_path} does not exist, skipping")
            return StepOutcome.success(step)
        if self._is_mounted(self.securityfs_path):
            return StepOutcome.success(step)

        try:
            mount("securityfs", "none", self.securityfs_path)
        except (subprocess.CalledProcessError, OSError) as e:
            return StepOutcome.failure(
                step, f"could not mount {self.securityfs_path}, "
                      f"AppArmor detection may not work ({_stderr(e)})"
            )

        logger.info(f"Mounted securityfs at {self.securityfs_path}")
        return StepOutcome.success(step)

    def reconcile_subsystem(self, subsystem: CgroupSubsystem, report: ReconcileReport) -> None:
        """
        Mount one hierarchy and create its compatibility links.

        Raises:
            CgroupError: If the hierarchy cannot be mounted
        """
        os.makedirs(subsystem.path, exist_ok=True)

        if not self._is_mounted(subsystem.path):
            try:
                mount("cgroup", "cgroup", subsystem.path, [subsystem.name])
            except (subprocess.CalledProcessError, OSError) as e:
                raise CgroupError(f"Failed to mount cgroup {subsystem.name}: {_stderr(e)}")
            logger.info(f"Mounted cgroup {subsystem.name} at {subsystem.path}")
            report.mounted.append(subsystem.name)
        else:
            logger.debug(f"Cgroup {subsystem.name} already mounted at {subsystem.path}")

        link_names = []
        if subsystem.is_named:
            link_names.append(subsystem.bare_name)
        if subsystem.is_inverted_cpu_pair:
            link_names.append(CgroupSubsystem.CANONICAL_CPU_PAIR)

        for link_name in link_names:
            outcome = self._create_symlink(link_name, subsystem.name)
            if outcome.ok:
                report.links.append(link_name)
            else:
                report.warn(f"Could not link {link_name} -> {subsystem.name}: {outcome.detail}")

    def _create_symlink(self, link_name: str, target: str) -> StepOutcome:
        """Create root/link_name pointing at target, relative to the root."""
        step = f"link {link_name} -> {target}"
        link_path = os.path.join(self.cgroup_root, link_name)

        if os.path.lexists(link_path):
            return StepOutcome.success(step)

        try:
            os.symlink(target, link_path)
        except OSError as e:
            return StepOutcome.failure(step, str(e))

        logger.info(f"Linked {link_path} -> {target}")
        return StepOutcome.success(step)

    def check_devices_hierarchy(self, subsystems: List[CgroupSubsystem]) -> List[str]:
        """
        Look for the devices controller among the hierarchies.

        Returns:
            Advisory messages; privileged nested containers may misbehave
            when any are returned
        """
        advisories = []

        if not any(s.name == "devices" for s in subsystems):
            advisories.append("The 'devices' cgroup should be in its own hierarchy.")

        if not any("devices" in s.controllers for s in subsystems):
            advisories.append("It looks like the 'devices' cgroup is not mounted.")

        return advisories

    def reconcile(self) -> ReconcileReport:
        """
        Reconcile the local cgroup root with the membership record.

        Safe to run repeatedly: existing mounts and links are left alone.

        Returns:
            ReconcileReport describing mounts, links and warnings

        Raises:
            CgroupError: If the root tmpfs or a hierarchy cannot be mounted
        """
        logger.info("Reconciling cgroup hierarchy...")
        report = ReconcileReport()

        self.ensure_cgroup_root()

        outcome = self.mount_securityfs()
        if outcome.ok:
            report.securityfs_mounted = self._is_mounted(self.securityfs_path)
        else:
            report.warn(outcome.detail)

        report.subsystems = self.read_subsystems()
        if not report.subsystems:
            report.warn(f"No cgroup hierarchies listed in {self.membership_file}")

        for subsystem in report.subsystems:
            self.reconcile_subsystem(subsystem, report)

        for advisory in self.check_devices_hierarchy(report.subsystems):
            report.warn(advisory)

        logger.info(
            f"Cgroup reconciliation complete: {len(report.subsystems)} hierarchies, "
            f"{len(report.mounted)} newly mounted"
        )
        return report

    def _is_mounted(self, mount_point: str) -> bool:
        return is_mounted(mount_point, self.mounts_file)


def _stderr(error: Exception) -> str:
    stderr = getattr(error, "stderr", None)
    if stderr:
        return stderr.strip()
    return str(error)


def main(argv: Optional[List[str]] = None):
    """Main function for command-line usage."""
    import argparse

    parser = argparse.ArgumentParser(description="Mirror the parent cgroup layout locally")
    parser.add_argument("--root", default=CgroupManager.DEFAULT_CGROUP_ROOT,
                        help="Local cgroup root")
    parser.add_argument("--membership", default=CgroupManager.DEFAULT_MEMBERSHIP_FILE,
                        help="Cgroup membership record to mirror")
    parser.add_argument("--list", "-l", action="store_true",
                        help="Only list the hierarchies that would be mounted")

    args = parser.parse_args(argv)

    manager = CgroupManager(args.root, args.membership)

    if args.list:
        for subsystem in manager.read_subsystems():
            print(f"{subsystem.name:30} {subsystem.path}")
        return 0

    try:
        report = manager.reconcile()
    except CgroupError as e:
        logger.error(str(e))
        return 1

    print(f"Mounted: {', '.join(report.mounted) or 'nothing new'}")
    for warning in report.warnings:
        print(f"WARNING: {warning}")
    return 0


if __name__ == "__main__":
    exit(main())
