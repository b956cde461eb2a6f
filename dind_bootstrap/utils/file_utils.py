#!/usr/bin/env python3
"""
File utilities for the bootstrap components.
Provides common file operations and path management.
"""

import os
import shutil
from pathlib import Path
from typing import List, Optional


def ensure_directory(path: str) -> Path:
    """
    Ensure a directory exists, creating it if necessary.
    
    Args:
        path: Directory path to create
        
    Returns:
        Path object for the directory
    """
    dir_path = Path(path)
    dir_path.mkdir(parents=True, exist_ok=True)
    return dir_path


def remove_tree(path: str) -> bool:
    """
    Remove a directory tree if it exists.
    
    Args:
        path: Directory to remove
        
    Returns:
        True if the path is absent afterwards, False otherwise
    """
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError:
        return False
    return not os.path.exists(path)


def remove_file(path: str) -> bool:
    """
    Remove a file if present.
    
    Returns:
        True if a file was removed, False if there was nothing to remove
    """
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False


def read_file_lines(file_path: str, strip_whitespace: bool = True) -> List[str]:
    """
    Read all lines from a file.
    
    Args:
        file_path: Path to file
        strip_whitespace: Whether to strip whitespace from lines
        
    Returns:
        List of lines from file
    """
    try:
        with open(file_path, 'r') as f:
            lines = f.readlines()
            
        if strip_whitespace:
            lines = [line.strip() for line in lines]
            
        return lines
    except (IOError, OSError):
        return []


def read_int_file(file_path: str) -> Optional[int]:
    """Read a file holding a single integer, such as a pid file."""
    lines = read_file_lines(file_path)
    if not lines:
        return None
    try:
        return int(lines[0])
    except ValueError:
        return None
