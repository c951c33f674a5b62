# holdfast/services/retention.py
"""
Backup retention ("trim") engine.

Artifacts are grouped by logical world (or extras) name and each group is
processed independently:

1. Anything older than keepDays is trimmed.
2. Anything between trimDays and keepDays old is bucketed by calendar day;
   each bucket keeps its newest keepLast artifacts.
3. Anything newer than trimDays is kept.
4. Interrupted (.partial) artifacts are always trimmed.
5. If fewer than minKeep artifacts survive, the newest trimmed ones are
   brought back until the floor is met.

Deletion is best effort: a file that can't be removed is logged and skipped.
"""

import logging
import os
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from holdfast.core.backup_config import OwnershipConfig
from holdfast.core.errors import HoldfastError, TrimmingError
from holdfast.services.worlds import EXTRAS_PATTERN, PARTIAL_SUFFIX, ServerExtras, World

logger = logging.getLogger(__name__)

DEFAULT_TRIM_DAYS = 3
DEFAULT_KEEP_DAYS = 14
DEFAULT_MIN_KEEP = 1
DEFAULT_KEEP_LAST = 1

PARTIAL_WORLD_PATTERN = re.compile(r"(?P<name>.+)\.\d{8}-\d{6}\.(mcworld|zip)\.partial", re.IGNORECASE)
WORLD_SUFFIXES = (".mcworld", ".zip")


class BackupAction(str, Enum):
    KEEP = "keep"
    TRIM = "trim"


class ArtifactKind(str, Enum):
    WORLD = "world"
    EXTRAS = "extras"


@dataclass
class Backup:
    path: Path
    name: str
    modified: datetime
    is_partial: bool = False
    action: BackupAction = BackupAction.KEEP


# ==========================================
# Discovery
# ==========================================

def _modified(path: Path) -> datetime:
    try:
        return datetime.fromtimestamp(path.stat().st_mtime)
    except (OSError, OverflowError, ValueError) as e:
        raise TrimmingError(f"Unable to read modification time of {path}: {e}")


def _world_backup(path: Path) -> Optional[Backup]:
    lowered = path.name.lower()
    if lowered.endswith(PARTIAL_SUFFIX):
        match = PARTIAL_WORLD_PATTERN.fullmatch(path.name)
        if match is None or EXTRAS_PATTERN.fullmatch(path.name[:-len(PARTIAL_SUFFIX)]):
            return None
        return Backup(path, match.group("name"), _modified(path), is_partial=True)

    if not lowered.endswith(WORLD_SUFFIXES) or EXTRAS_PATTERN.fullmatch(path.name):
        return None
    try:
        world = World.open(path)
    except HoldfastError as e:
        logger.warning("[Trim] Skipping unreadable world backup %s: %s", path.name, e)
        return None
    return Backup(path, world.name, _modified(path))


def _extras_backup(path: Path) -> Optional[Backup]:
    if path.name.lower().endswith(PARTIAL_SUFFIX):
        match = EXTRAS_PATTERN.fullmatch(path.name[:-len(PARTIAL_SUFFIX)])
        if match is None:
            return None
        return Backup(path, match.group(1), _modified(path), is_partial=True)

    try:
        extras = ServerExtras.open(path)
    except HoldfastError:
        return None
    return Backup(path, extras.name, _modified(path))


def get_backups(folder: Path, kind: ArtifactKind = ArtifactKind.WORLD) -> Dict[str, List[Backup]]:
    """Group the backup files in folder by logical name. Folders and hidden files are ignored."""
    folder = Path(folder)
    if not folder.is_dir():
        raise TrimmingError(f"Backup folder not found: {folder}")

    reader = _world_backup if kind == ArtifactKind.WORLD else _extras_backup
    groups: Dict[str, List[Backup]] = {}
    for path in sorted(folder.iterdir()):
        if path.name.startswith(".") or not path.is_file():
            continue
        backup = reader(path)
        if backup is not None:
            groups.setdefault(backup.name, []).append(backup)
    return groups


# ==========================================
# Decisions
# ==========================================

def trim_bucket(bucket: List[Backup], keep_last: int = DEFAULT_KEEP_LAST):
    """Keep the newest keep_last complete backups of a day, trim the rest."""
    ordered = sorted(bucket, key=lambda b: b.modified, reverse=True)
    kept = 0
    for backup in ordered:
        if backup.is_partial or kept >= keep_last:
            backup.action = BackupAction.TRIM
        else:
            backup.action = BackupAction.KEEP
            kept += 1


def process(group: List[Backup],
            trim_days: int = DEFAULT_TRIM_DAYS,
            keep_days: int = DEFAULT_KEEP_DAYS,
            min_keep: int = DEFAULT_MIN_KEEP,
            keep_last: int = DEFAULT_KEEP_LAST,
            now: Optional[datetime] = None) -> List[Backup]:
    """Assign keep/trim to every backup in one group. Returns the group newest-first."""
    if trim_days < 1 or keep_days < 1 or keep_last < 0 or min_keep < 0:
        raise TrimmingError(
            f"Invalid trim settings: trimDays={trim_days} keepDays={keep_days} "
            f"minKeep={min_keep} keepLast={keep_last}"
        )

    today = (now or datetime.now()).replace(hour=0, minute=0, second=0, microsecond=0)
    try:
        trim_boundary = today - timedelta(days=trim_days - 1)
        keep_boundary = today - timedelta(days=keep_days - 1)
    except OverflowError as e:
        raise TrimmingError(f"Trim window out of range: {e}")

    ordered = sorted(group, key=lambda b: b.modified, reverse=True)
    buckets: Dict[date, List[Backup]] = {}

    for backup in ordered:
        if backup.is_partial or backup.modified < keep_boundary:
            backup.action = BackupAction.TRIM
        elif backup.modified < trim_boundary:
            buckets.setdefault(backup.modified.date(), []).append(backup)
        else:
            backup.action = BackupAction.KEEP

    for bucket in buckets.values():
        trim_bucket(bucket, keep_last)

    floor = max(min_keep, 1)
    kept = sum(1 for b in ordered if b.action == BackupAction.KEEP)
    for backup in ordered:
        if kept >= floor:
            break
        if backup.action == BackupAction.TRIM and not backup.is_partial:
            backup.action = BackupAction.KEEP
            kept += 1

    return ordered


# ==========================================
# Execution
# ==========================================

def trim_backups(folder: Path,
                 kind: ArtifactKind = ArtifactKind.WORLD,
                 trim_days: Optional[int] = None,
                 keep_days: Optional[int] = None,
                 min_keep: Optional[int] = None,
                 dry_run: bool = False,
                 now: Optional[datetime] = None) -> List[Backup]:
    """Process every group in folder and delete what was marked for trimming."""
    trim_days = DEFAULT_TRIM_DAYS if trim_days is None else trim_days
    keep_days = DEFAULT_KEEP_DAYS if keep_days is None else keep_days
    min_keep = DEFAULT_MIN_KEEP if min_keep is None else min_keep

    logger.info("[Trim] Trimming %s backups in %s (trimDays=%d keepDays=%d minKeep=%d%s)",
                kind.value, folder, trim_days, keep_days, min_keep, ", dry run" if dry_run else "")

    results: List[Backup] = []
    for group in get_backups(folder, kind).values():
        for backup in process(group, trim_days, keep_days, min_keep, now=now):
            results.append(backup)
            if backup.action != BackupAction.TRIM:
                logger.debug("[Trim] Keeping %s", backup.path.name)
                continue

            logger.info("[Trim] Trimming %s", backup.path.name)
            if dry_run:
                continue
            try:
                backup.path.unlink()
            except OSError as e:
                logger.error("[Trim] Unable to delete %s: %s", backup.path.name, e)
    return results


def fix_ownership(folder: Path, ownership: OwnershipConfig):
    """Apply configured owner/group/permissions to the complete backups in folder."""
    uid, gid = ownership.parse_owner_and_group()
    permissions = ownership.parse_posix_permissions()
    if uid is None and gid is None and permissions is None:
        return

    paths = [
        backup.path
        for kind in ArtifactKind
        for group in get_backups(folder, kind).values()
        for backup in group
        if not backup.is_partial
    ]
    logger.info("[Ownership] Updating %d paths in %s", len(paths), folder)
    for path in paths:
        try:
            if uid is not None or gid is not None:
                os.chown(path, uid if uid is not None else -1, gid if gid is not None else -1)
            if permissions is not None:
                os.chmod(path, permissions)
        except OSError as e:
            logger.error("[Ownership] Unable to update %s: %s", path, e)
