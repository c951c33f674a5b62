# holdfast/services/worlds.py
"""
World and extras archives.

World layouts:
- Folder: a live world. Bedrock if it holds levelname.txt (the world name),
  otherwise Java and named after the folder.
- .mcworld: a Bedrock archive, files at the archive root.
- .zip: a Java archive, files under a single top-level world folder.

Archives are written under a ".partial" name and renamed once complete, so
an interrupted write never looks like a finished backup.
"""

import logging
import re
import shutil
import zipfile
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional

from holdfast.core.errors import InvalidExtrasArchive, WorldError

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
PARTIAL_SUFFIX = ".partial"

BEDROCK_LEVEL_NAME = "levelname.txt"
JAVA_LEVEL_DAT = "level.dat"

EXTRAS_PATTERN = re.compile(r"(.+?)\.extras\.(.+?)\.zip", re.IGNORECASE)


class WorldType(str, Enum):
    FOLDER = "folder"
    MCWORLD = "mcworld"
    JAVA_ARCHIVE = "zip"


def timestamp(moment: Optional[datetime] = None) -> str:
    return (moment or datetime.now()).strftime(TIMESTAMP_FORMAT)


def _safe_file_name(name: str) -> str:
    return name.replace("/", "_").replace("\\", "_")


def _write_archive(archive_path: Path, entries: Iterable[tuple]):
    """Write (file_path, arcname) pairs into archive_path via a .partial file."""
    partial = archive_path.with_name(archive_path.name + PARTIAL_SUFFIX)
    with zipfile.ZipFile(partial, "w", zipfile.ZIP_DEFLATED) as zipf:
        for file_path, arcname in entries:
            zipf.write(file_path, str(arcname))
    partial.replace(archive_path)


def _folder_entries(source_dir: Path, prefix: Optional[str]):
    for file_path in sorted(source_dir.rglob("*")):
        if file_path.is_file():
            relative = file_path.relative_to(source_dir)
            yield file_path, (Path(prefix) / relative if prefix else relative).as_posix()


@dataclass
class World:
    location: Path
    name: str
    type: WorldType
    is_bedrock: bool

    @classmethod
    def open(cls, location: Path) -> "World":
        location = Path(location)
        if location.is_dir():
            level_name = location / BEDROCK_LEVEL_NAME
            if level_name.is_file():
                name = level_name.read_text(encoding="utf-8").strip()
                return cls(location, name or location.name, WorldType.FOLDER, True)
            return cls(location, location.name, WorldType.FOLDER, False)

        if not location.is_file():
            raise WorldError(f"World not found: {location}")

        suffix = location.suffix.lower()
        try:
            with zipfile.ZipFile(location) as zipf:
                names = zipf.namelist()
                if suffix == ".mcworld":
                    if BEDROCK_LEVEL_NAME not in names:
                        raise WorldError(f"{location.name} has no {BEDROCK_LEVEL_NAME}")
                    name = zipf.read(BEDROCK_LEVEL_NAME).decode("utf-8").strip()
                    return cls(location, name, WorldType.MCWORLD, True)
                if suffix == ".zip":
                    level_dat = next((n for n in names if n.endswith(JAVA_LEVEL_DAT)), None)
                    if level_dat is None or "/" not in level_dat:
                        raise WorldError(f"{location.name} has no world folder with {JAVA_LEVEL_DAT}")
                    return cls(location, level_dat.split("/")[0], WorldType.JAVA_ARCHIVE, False)
        except zipfile.BadZipFile as e:
            raise WorldError(f"{location.name} is not a valid archive: {e}")

        raise WorldError(f"Unsupported world type: {location.name}")

    @property
    def archive_extension(self) -> str:
        return "mcworld" if self.is_bedrock else "zip"

    def pack(self, archive_path: Path) -> "World":
        """Pack a world folder into archive_path (.mcworld or .zip)."""
        if self.type != WorldType.FOLDER:
            raise WorldError(f"Only world folders can be packed: {self.location}")
        prefix = None if self.is_bedrock else self.location.name
        _write_archive(Path(archive_path), _folder_entries(self.location, prefix))
        return World.open(archive_path)

    def unpack(self, destination: Path) -> "World":
        """Extract an archived world. Bedrock lands in destination/<name>, Java in destination."""
        if self.type == WorldType.FOLDER:
            raise WorldError(f"World is already a folder: {self.location}")
        destination = Path(destination)
        target = destination / _safe_file_name(self.name) if self.is_bedrock else destination
        target.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(self.location) as zipf:
            zipf.extractall(target)
        return World.open(target if self.is_bedrock else destination / self.name)

    def backup(self, destination: Path, moment: Optional[datetime] = None) -> "World":
        """Snapshot into destination as <name>.<timestamp>.<ext>."""
        destination = Path(destination)
        destination.mkdir(parents=True, exist_ok=True)
        archive_path = destination / f"{_safe_file_name(self.name)}.{timestamp(moment)}.{self.archive_extension}"

        logger.info("[Worlds] Backing up %s to %s", self.name, archive_path.name)
        if self.type == WorldType.FOLDER:
            return self.pack(archive_path)

        partial = archive_path.with_name(archive_path.name + PARTIAL_SUFFIX)
        shutil.copyfile(self.location, partial)
        partial.replace(archive_path)
        return World.open(archive_path)


def find_worlds(folder: Path) -> List[World]:
    """Every world folder directly under folder."""
    folder = Path(folder)
    if not folder.is_dir():
        raise WorldError(f"Worlds folder not found: {folder}")
    return [World.open(path) for path in sorted(folder.iterdir()) if path.is_dir()]


@dataclass
class ServerExtras:
    location: Path
    name: str

    @classmethod
    def open(cls, location: Path) -> "ServerExtras":
        location = Path(location)
        match = EXTRAS_PATTERN.fullmatch(location.name)
        if match is None:
            raise InvalidExtrasArchive(f"Not an extras archive: {location.name}")
        return cls(location, match.group(1))

    @classmethod
    def backup(cls, name: str, paths: List[Path], destination: Path,
               moment: Optional[datetime] = None) -> "ServerExtras":
        """Archive every extras path into <name>.extras.<timestamp>.zip."""
        destination = Path(destination)
        destination.mkdir(parents=True, exist_ok=True)
        archive_path = destination / f"{_safe_file_name(name)}.extras.{timestamp(moment)}.zip"

        entries = []
        for path in map(Path, paths):
            if path.is_dir():
                entries.extend(_folder_entries(path, path.name))
            elif path.is_file():
                entries.append((path, path.name))
            else:
                raise InvalidExtrasArchive(f"Extras path not found: {path}")

        logger.info("[Worlds] Backing up %d extras for %s", len(paths), name)
        try:
            _write_archive(archive_path, entries)
        except (OSError, zipfile.BadZipFile) as e:
            raise InvalidExtrasArchive(f"Could not create ZIP archive for extras: {e}")
        return cls(archive_path, name)
