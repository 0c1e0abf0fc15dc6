"""
Core utilities for backupctl.
"""
import logging
import os
import shutil
import signal
import sys
from pathlib import Path
from typing import Any, Callable

from rich.logging import RichHandler


def is_windows() -> bool:
    """Return True if running on Windows."""
    return sys.platform == "win32"

def mask_token(token: str) -> str:
    """Mask a token, returning only the last 4 characters visible."""
    if not token or len(token) < 8:
        return "****"
    return "*" * (len(token) - 4) + token[-4:]

def human_size(nbytes: int) -> str:
    """Convert bytes to a human-readable string (e.g. 1.2 MiB)."""
    if nbytes == 0:
        return "0 B"
    suffixes = ["B", "KiB", "MiB", "GiB", "TiB", "PiB"]
    i = 0
    size = float(nbytes)
    while size >= 1024 and i < len(suffixes) - 1:
        size /= 1024.0
        i += 1
    if i == 0:
        return f"{int(size)} {suffixes[i]}"
    return f"{size:.1f} {suffixes[i]}"

def has_data(path: Path) -> bool:
    """True for an existing file or a directory with at least one entry."""
    if path.is_dir():
        return any(path.iterdir())
    return path.exists()

def copy_into(src: Path, dest: Path) -> None:
    """Copy src over dest, merging into existing directories."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    if src.is_dir():
        shutil.copytree(src, dest, symlinks=True, dirs_exist_ok=True)
    else:
        shutil.copy2(src, dest)

def move_into(src: Path, dest: Path) -> None:
    """Replace dest with src."""
    if dest.is_dir() and not dest.is_symlink():
        shutil.rmtree(dest)
    elif dest.exists() or dest.is_symlink():
        dest.unlink()
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(src), str(dest))

def free_space(path: Path) -> int:
    """Free bytes on the filesystem holding path, walking up to the nearest existing parent."""
    probe = path
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    return shutil.disk_usage(probe).free

def setup_logging(verbose: bool = False) -> None:
    """Route library logging through rich. Quiet by default so prompts stay readable."""
    level = logging.DEBUG if verbose else logging.WARNING
    if os.environ.get("BACKUPCTL_LOG_LEVEL"):
        level = getattr(logging, os.environ["BACKUPCTL_LOG_LEVEL"].upper(), level)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=verbose)],
        force=True,
    )

def setup_signal_handlers(cleanup_fn: Callable[[], None]) -> None:
    """Install SIGINT/SIGTERM handlers that invoke the cleanup function and exit."""
    def handler(signum: Any, frame: Any) -> None:
        cleanup_fn()
        sys.exit(1)

    signal.signal(signal.SIGINT, handler)
    if not is_windows():
        signal.signal(signal.SIGTERM, handler)
