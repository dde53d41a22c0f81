"""Cleanup of leaked instance workdirs.

An instance whose test process died before ``Varnish.stop`` ran leaves its
workdir (and ``.log`` file) behind in the temporary directory. This module
finds and removes them.
"""

import shutil
from pathlib import Path
from typing import List, Optional, Tuple

from .config import Config, get_config


def find_instance_workdirs(config: Optional[Config] = None) -> List[Tuple[Path, int]]:
    """Find instance workdirs and logs left in the temporary directory.

    Args:
        config: Optional Config object (default: load from files).

    Returns:
        List of (path, size_bytes) tuples, sorted by name.
    """
    if config is None:
        config = get_config()

    items = []
    if not config.tmp_dir.exists():
        return items

    for item in config.tmp_dir.glob(f"{config.workdir_prefix}*"):
        if item.is_dir():
            # Calculate directory size
            size = sum(f.stat().st_size for f in item.rglob('*') if f.is_file())
            items.append((item, size))
        elif item.is_file():
            items.append((item, item.stat().st_size))

    return sorted(items, key=lambda x: x[0].name)


def format_size(size_bytes: int) -> str:
    """Format a size in bytes to human-readable string."""
    for unit in ['B', 'KB', 'MB', 'GB']:
        if size_bytes < 1024:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} TB"


def clean_workdirs(config: Optional[Config] = None, dry_run: bool = False) -> Tuple[int, int]:
    """Remove leaked instance workdirs and logs.

    Args:
        config: Optional Config object (default: load from files).
        dry_run: If True, only report what would be deleted.

    Returns:
        Tuple of (items_removed, bytes_freed).
    """
    items = find_instance_workdirs(config)
    total_items = len(items)
    total_bytes = sum(size for _, size in items)

    if dry_run:
        return total_items, total_bytes

    for item, _ in items:
        if item.is_dir():
            shutil.rmtree(item, ignore_errors=True)
        else:
            item.unlink(missing_ok=True)

    return total_items, total_bytes


def list_workdirs(config: Optional[Config] = None) -> None:
    """Print leaked instance workdirs."""
    if config is None:
        config = get_config()

    print(f"Instance workdirs in {config.tmp_dir} ({config.workdir_prefix}*)")
    print("=" * 60)
    items = find_instance_workdirs(config)
    if not items:
        print("  (none)")
        return

    total = 0
    for path, size in items:
        print(f"  {path.name:45} {format_size(size):>10}")
        total += size
    print(f"  {'─' * 56}")
    print(f"  {'Total':45} {format_size(total):>10}")
