#!/usr/bin/env python3
"""
Mount table helpers.

Queries go through the kernel's own tables (/proc/mounts and
/proc/filesystems); mounts and unmounts go through mount(8).
"""

import logging
import subprocess
from typing import List, Optional, Sequence

from dind_bootstrap.utils.file_utils import read_file_lines

logger = logging.getLogger(__name__)

PROC_MOUNTS = "/proc/mounts"
PROC_FILESYSTEMS = "/proc/filesystems"


def is_mounted(mount_point: str, mounts_file: str = PROC_MOUNTS) -> bool:
    """
    Check if a filesystem is already mounted at the given mount point.
    
    Args:
        mount_point: Path to check
        mounts_file: Mount table to consult
        
    Returns:
        True if mounted, False otherwise
    """
    return mount_source(mount_point, mounts_file) is not None


def mount_source(mount_point: str, mounts_file: str = PROC_MOUNTS) -> Optional[str]:
    """
    Find the source of the topmost mount at the given mount point.

    Later entries in the table are stacked over earlier ones, so the last
    match is the mount that is visible.

    Returns:
        Mount source (a device path, or a name such as "overlay"), or None
        if nothing is mounted there
    """
    target = mount_point.rstrip("/") or "/"
    source = None
    for line in read_file_lines(mounts_file):
        parts = line.split()
        if len(parts) >= 2 and _unescape(parts[1]) == target:
            source = _unescape(parts[0])
    return source


def supported_filesystems(filesystems_file: str = PROC_FILESYSTEMS) -> List[str]:
    """
    List filesystem types the kernel supports.

    Lines look like "nodev\\tcgroup" or "\\text4"; only the type is kept.
    """
    filesystems = []
    for line in read_file_lines(filesystems_file):
        parts = line.split()
        if parts:
            filesystems.append(parts[-1])
    return filesystems


def mount(fstype: str, source: str, target: str,
          options: Optional[Sequence[str]] = None) -> subprocess.CompletedProcess:
    """
    Mount a filesystem.

    Raises:
        subprocess.CalledProcessError: If mount(8) fails
    """
    cmd = ["mount", "-n", "-t", fstype]
    if options:
        cmd.extend(["-o", ",".join(options)])
    cmd.extend([source, target])

    logger.debug(f"Running: {' '.join(cmd)}")
    return subprocess.run(cmd, capture_output=True, text=True, check=True)


def umount(target: str, lazy: bool = False) -> subprocess.CompletedProcess:
    """
    Unmount a filesystem, detaching it lazily when asked.

    Raises:
        subprocess.CalledProcessError: If umount(8) fails
    """
    cmd = ["umount", "-l", target] if lazy else ["umount", target]
    logger.debug(f"Running: {' '.join(cmd)}")
    return subprocess.run(cmd, capture_output=True, text=True, check=True)


def _unescape(path: str) -> str:
    # /proc/mounts octal-escapes whitespace and backslashes
    return (path.replace("\\040", " ").replace("\\011", "\t")
                .replace("\\012", "\n").replace("\\134", "\\"))
