"""
Path categorizer: maps filesystem paths onto repository addresses.

The encoding is a pure string transform and is lossy on purpose. A literal
underscore in a path component cannot be told apart from an encoded
separator, so segments are never decoded back into paths. The original path
of a repository always comes from the snapshot metadata.
"""
import logging
from pathlib import Path
from typing import Iterable, List, Tuple

from .errors import InvalidPathError
from .models import Category, RepositoryAddress

logger = logging.getLogger(__name__)

DEFAULT_HOME_ROOT = "/home"
DEFAULT_DOCKER_VOLUMES_ROOT = "/mnt/docker-data/volumes"

# Entries in the docker volumes root that are not volumes
DOCKER_RESERVED_ENTRIES = frozenset({"backingFsBlockDev", "metadata.db"})

SEP = "/"


def _normalize_root(root: str) -> str:
    return root.rstrip(SEP) or SEP

def _strip_under(path: str, root: str) -> str | None:
    """Return the part of `path` below `root`, or None when it is not under it.

    Matching is component-wise: `/homestead` is not under `/home`. A path equal
    to the root yields the empty string.
    """
    if path == root:
        return ""
    prefix = root if root.endswith(SEP) else root + SEP
    if path.startswith(prefix):
        return path[len(prefix):]
    return None

def categorize(
    path: str,
    home_root: str = DEFAULT_HOME_ROOT,
    docker_volume_root: str = DEFAULT_DOCKER_VOLUMES_ROOT,
) -> Tuple[Category, str]:
    """
    Map an absolute path to its (category, segment) pair.

    Raises InvalidPathError for empty or relative paths, for the bare roots,
    and for the filesystem root itself.
    """
    if not path:
        raise InvalidPathError("Path is empty.")
    if not path.startswith(SEP):
        raise InvalidPathError(f"Path '{path}' is not absolute.")

    # repeated and trailing separators name the same path
    components = [c for c in path.split(SEP) if c]
    if not components:
        raise InvalidPathError("The filesystem root cannot be backed up as a repository.")
    normalized = SEP + SEP.join(components)

    docker_root = _normalize_root(docker_volume_root)
    home = _normalize_root(home_root)

    below = _strip_under(normalized, docker_root)
    if below is not None:
        if not below:
            raise InvalidPathError(f"Path '{path}' is the docker volume root, not a volume.")
        return Category.DOCKER_VOLUME, below.replace(SEP, "_")

    below = _strip_under(normalized, home)
    if below is not None:
        if not below:
            raise InvalidPathError(f"Path '{path}' is the home root, not a user directory.")
        user, _, remainder = below.partition(SEP)
        if not remainder:
            return Category.USER_HOME, user
        return Category.USER_HOME, f"{user}/{remainder.replace(SEP, '_')}"

    return Category.SYSTEM, normalized.lstrip(SEP).replace(SEP, "_")

def address_for(
    path: str,
    host: str,
    home_root: str = DEFAULT_HOME_ROOT,
    docker_volume_root: str = DEFAULT_DOCKER_VOLUMES_ROOT,
) -> RepositoryAddress:
    """Categorize a live path into a full repository address."""
    category, segment = categorize(path, home_root, docker_volume_root)
    return RepositoryAddress(host=host, category=category, segment=segment)

def determine_tag(path: str, home_root: str = DEFAULT_HOME_ROOT, docker_volume_root: str = DEFAULT_DOCKER_VOLUMES_ROOT) -> str:
    """Return the restic tag for a path."""
    category, _ = categorize(path, home_root, docker_volume_root)
    return category.tag

def discover_docker_volumes(docker_volume_root: str = DEFAULT_DOCKER_VOLUMES_ROOT) -> List[Path]:
    """List volume directories below the docker volume root, skipping non-volume artifacts."""
    root = Path(docker_volume_root)
    if not root.is_dir():
        return []

    logger.info("Detecting docker volumes in %s", root)
    volumes = [
        entry for entry in root.iterdir()
        if entry.is_dir() and entry.name not in DOCKER_RESERVED_ENTRIES
    ]
    return sorted(volumes)

def validate_and_filter_paths(paths: Iterable[str | Path]) -> Tuple[List[Path], List[Path]]:
    """Split paths into (existing, missing). Missing paths are logged."""
    valid: List[Path] = []
    missing: List[Path] = []
    for p in paths:
        path = Path(p)
        if path.exists():
            valid.append(path)
        else:
            logger.warning("Path does not exist, skipping: %s", path)
            missing.append(path)

    if missing:
        logger.info("Skipped %d non-existent paths", len(missing))
    return valid, missing
