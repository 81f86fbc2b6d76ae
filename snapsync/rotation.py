"""Snapshot rotations, retention decisions and pruning."""

import importlib
import logging
import os
import shutil
import stat
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Protocol, Set, Tuple

from .config import BACKUP_NAME, LATEST_NAME, SNAPSHOT_NAME, PruneConfig
from .errors import ConfigurationError, RotationError

logger = logging.getLogger(__name__)


class Rotation:
    """A snapshot directory and the time parsed from its name."""

    def __init__(self, path: str, time: datetime):
        self.path = path
        self.time = time

    def __eq__(self, other) -> bool:
        if not isinstance(other, Rotation):
            return NotImplemented
        return self.path == other.path

    def __hash__(self) -> int:
        return hash(self.path)

    # Newest first by default.
    def __lt__(self, other: "Rotation") -> bool:
        return self.time > other.time

    def __str__(self) -> str:
        return self.path

    def __repr__(self) -> str:
        return f"Rotation({self.path!r}, {self.time.isoformat()})"


class RetentionPolicy(Protocol):
    """Decides which rotations to keep, e.g. by hourly/daily/... buckets."""

    def filter(self, rotations: Iterable[Rotation]) -> Tuple[Iterable[Rotation], Iterable[Rotation]]:
        ...


class RetentionDecision:
    """Disjoint keep and erase sets covering every rotation considered."""

    def __init__(self, keep: Set[Rotation], erase: Set[Rotation]):
        self.keep = keep
        self.erase = erase

    @property
    def sorted_keep(self) -> List[Rotation]:
        return sorted(self.keep)

    @property
    def sorted_erase(self) -> List[Rotation]:
        return sorted(self.erase)


def parse_rotations(
    names: Iterable[str], format: str = BACKUP_NAME, latest_name: Optional[str] = LATEST_NAME
) -> List[Rotation]:
    """Build rotations from directory entry names, skipping ones that do not match `format`."""
    rotations = []

    for name in names:
        if name == latest_name or name.startswith("."):
            continue

        try:
            rotations.append(Rotation(name, datetime.strptime(name, format)))
        except ValueError as e:
            logger.warning(f"Skipping {name}, error parsing {name}: {e}")

    return rotations


def load_policy(config: PruneConfig) -> RetentionPolicy:
    """Import the configured policy factory and create the policy from the prune config."""
    if not config.policy:
        raise ConfigurationError("No retention policy configured (prune.policy)")

    module_name, _, attribute = config.policy.partition(":")
    try:
        factory = getattr(importlib.import_module(module_name), attribute)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load retention policy '{config.policy}': {e}")

    policy = factory(config)
    if not callable(getattr(policy, "filter", None)):
        raise ConfigurationError(f"Retention policy '{config.policy}' has no filter() method")
    return policy


class RetentionEngine:
    """Decides and carries out the pruning of the rotations in a directory."""

    def __init__(self, root: str = ".", format: str = BACKUP_NAME, latest_name: str = LATEST_NAME):
        self.root = Path(root)
        self.format = format
        self.latest_name = latest_name

    def current_rotations(self) -> List[Rotation]:
        return parse_rotations(sorted(os.listdir(self.root)), self.format, self.latest_name)

    def latest_target(self) -> Optional[str]:
        """Name of the rotation the latest alias points to, if it exists."""
        if not self.latest_name:
            return None

        latest = self.root / self.latest_name
        if not latest.exists():
            return None
        return latest.resolve().name

    def decide(
        self,
        rotations: Iterable[Rotation],
        policy: RetentionPolicy,
        latest: Optional[str] = None,
    ) -> RetentionDecision:
        """
        Partition rotations into keep and erase sets using `policy`.

        Anything the policy does not explicitly erase is kept. The rotation
        named `latest` is always kept, whatever the policy decided.
        """
        rotations = set(rotations)
        keep, erase = policy.filter(rotations)

        erase = (set(erase) & rotations) - set(keep)
        keep = rotations - erase

        if latest is not None:
            latest_rotation = next((r for r in erase if r.path == latest), None)
            if latest_rotation is not None:
                logger.info(f"Retaining latest backup {latest_rotation}")
                erase.discard(latest_rotation)
                keep.add(latest_rotation)

        return RetentionDecision(keep, erase)

    def perform(self, decision: RetentionDecision) -> List[Tuple[Rotation, OSError]]:
        """
        Erase the rotations in the decision's erase set.

        Every rotation is attempted even when an earlier one fails.

        Returns:
            The rotations that could not be removed along with their errors
        """
        failures = []

        for rotation in decision.sorted_erase:
            path = self.root / rotation.path
            logger.info(f"Erasing {path}...")

            try:
                _make_removable(path)
                if path.is_symlink() or not path.is_dir():
                    path.unlink()
                else:
                    shutil.rmtree(path)
            except OSError as e:
                logger.error(f"Failed to erase {path}: {e}")
                failures.append((rotation, e))

        return failures

    def prune(
        self, policy: RetentionPolicy, dry: bool = False
    ) -> Tuple[RetentionDecision, List[Tuple[Rotation, OSError]]]:
        """
        Decide on the current rotations and erase unless `dry`.

        Returns:
            The decision and the rotations that could not be erased
        """
        latest = self.latest_target()
        decision = self.decide(self.current_rotations(), policy, latest)
        logger.info(
            f"Keeping {len(decision.keep)} and erasing {len(decision.erase)} backups in {self.root}"
        )

        if dry:
            return decision, []

        if latest is None and decision.erase:
            logger.warning(
                f"No latest backup '{self.latest_name}' in {self.root}, "
                f"erasing without latest protection"
            )
        return decision, self.perform(decision)


def _add_permissions(path: str, mode: int) -> None:
    """chmod ug+rwX on a single path."""
    bits = stat.S_IRUSR | stat.S_IWUSR | stat.S_IRGRP | stat.S_IWGRP
    if stat.S_ISDIR(mode) or mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH):
        bits |= stat.S_IXUSR | stat.S_IXGRP
    os.chmod(path, stat.S_IMODE(mode) | bits)


def _make_removable(path: Path) -> None:
    """Recursively grant the owner and group rwX so the tree can be removed."""
    if path.is_symlink() or not path.exists():
        return

    _add_permissions(str(path), path.stat().st_mode)

    for directory, dirnames, filenames in os.walk(path):
        for name in dirnames + filenames:
            entry = os.path.join(directory, name)
            mode = os.lstat(entry).st_mode
            if not stat.S_ISLNK(mode):
                _add_permissions(entry, mode)


def rotate_snapshot(
    root: str = ".",
    snapshot_name: str = SNAPSHOT_NAME,
    latest_name: str = LATEST_NAME,
    format: str = BACKUP_NAME,
    now: Optional[datetime] = None,
) -> str:
    """
    Rename the in-progress snapshot to a timestamped name and point latest at it.

    Returns:
        The new name of the snapshot
    """
    root = Path(root)
    if now is None:
        now = datetime.now(timezone.utc)

    source = root / snapshot_name
    if not source.is_dir():
        raise RotationError(f"Snapshot directory not found: {source}", path=str(source))

    name = now.strftime(format)
    destination = root / name
    if destination.exists():
        raise RotationError(f"Rotation already exists: {destination}", path=str(destination))

    logger.info(f"Rotating {source} to {destination}")
    source.rename(destination)

    # Replace the alias atomically so it never dangles.
    latest = root / latest_name
    temporary = root / f".{latest_name}.tmp"
    if temporary.is_symlink() or temporary.exists():
        temporary.unlink()
    temporary.symlink_to(name)
    os.replace(temporary, latest)

    logger.info(f"Latest backup is now {name}")
    return name
