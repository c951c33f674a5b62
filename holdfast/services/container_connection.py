# holdfast/services/container_connection.py
"""
Per-container backup unit of work.

A ContainerConnection owns one server's console channel and runtime state
(player count, last backup time). run_backup():

1. Requires a connected console
2. Drops a hold marker (.<name>.hold) in the backup folder
3. Pauses autosave (marker removed again if this fails)
4. Snapshots every world, then the extras, recording failures
5. Resumes autosave, always
6. Removes the marker once resume is confirmed
7. Raises BackupsFailed if any snapshot failed

A marker left behind by a crash is repaired at startup via
cleanup_incomplete_backup().
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from holdfast.core.backup_config import BackupConfig, ContainerConfig
from holdfast.core.config import DOCKER_PATH, HOST_KEYS_FILE, SSH_USERNAME
from holdfast.core.errors import (
    BackupsFailed,
    ConfigError,
    HoldNotFound,
    InvalidAddress,
    MissingCredential,
    ProcessNotRunning,
)
from holdfast.services.channels import ProcessChannel, RconChannel, SecureShellChannel, TerminalChannel
from holdfast.services.container_terminal import ContainerKind, make_terminal
from holdfast.services.ssh_host_keys import SSHHostKeyValidator
from holdfast.services.worlds import ServerExtras, World, find_worlds

logger = logging.getLogger(__name__)


@dataclass
class ToolConfig:
    """External tools and credentials shared by every container."""
    docker_path: str = DOCKER_PATH
    ssh_username: str = SSH_USERNAME
    host_keys: Optional[SSHHostKeyValidator] = None

    @classmethod
    def from_config(cls, config: BackupConfig) -> "ToolConfig":
        return cls(
            docker_path=config.docker_path or DOCKER_PATH,
            ssh_username=config.ssh_username or SSH_USERNAME,
            host_keys=SSHHostKeyValidator(HOST_KEYS_FILE),
        )


def parse_address(address: str) -> Tuple[str, int]:
    """Split "host:port". Anything but exactly two parts is rejected."""
    parts = str(address).split(":")
    if len(parts) != 2 or not parts[0]:
        raise InvalidAddress(address)
    try:
        port = int(parts[1])
    except ValueError:
        raise InvalidAddress(address)
    if not 0 < port < 65536:
        raise InvalidAddress(address)
    return parts[0], port


class ContainerConnection:
    def __init__(self, name: str, kind: ContainerKind, channel: TerminalChannel,
                 worlds: Optional[List[Path]] = None,
                 extras: Optional[List[Path]] = None,
                 worlds_folder: Optional[Path] = None,
                 logger: Optional[logging.Logger] = None):
        self.name = name
        self.kind = kind
        self.channel = channel
        self.worlds = [Path(w) for w in worlds or []]
        self.extras = [Path(e) for e in extras] if extras else None
        self.worlds_folder = Path(worlds_folder) if worlds_folder else None
        self.logger = logger or logging.getLogger(__name__)
        self.terminal = make_terminal(kind, channel, self.logger)

        self.player_count = 0
        self.last_backup_time: Optional[datetime] = None

    def __repr__(self) -> str:
        return f"ContainerConnection({self.name!r}, {self.kind.value})"

    # ==========================================
    # Lifecycle
    # ==========================================

    @property
    def is_running(self) -> bool:
        return self.channel.is_connected

    async def start(self):
        await self.channel.start()

    async def stop(self):
        await self.channel.close()

    async def reset(self):
        await self.channel.reset()
        self.player_count = 0

    @asynccontextmanager
    async def attached(self):
        """Start the console if needed; stop and reset it on exit only if it was started here."""
        started = False
        if not self.is_running:
            await self.start()
            started = True
        try:
            yield self
        finally:
            if started:
                await self.stop()
                await self.reset()

    # ==========================================
    # Player events
    # ==========================================

    def listen(self, triggers: Sequence[str], handler: Callable[[str], None]):
        return self.channel.matcher.add_listener(triggers, handler)

    def increment_player_count(self) -> int:
        self.player_count += 1
        return self.player_count

    def decrement_player_count(self) -> int:
        self.player_count = max(self.player_count - 1, 0)
        return self.player_count

    # ==========================================
    # Hold marker
    # ==========================================

    def hold_marker(self, destination: Path) -> Path:
        return Path(destination) / f".{self.name}.hold"

    def is_save_held(self, destination: Path) -> bool:
        return self.hold_marker(destination).exists()

    def _take_hold(self, destination: Path):
        marker = self.hold_marker(destination)
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.touch(exist_ok=True)

    def _release_hold(self, destination: Path):
        self.hold_marker(destination).unlink(missing_ok=True)

    # ==========================================
    # Backup
    # ==========================================

    def world_paths(self) -> List[Path]:
        paths = list(self.worlds)
        if self.worlds_folder is not None:
            paths.extend(world.location for world in find_worlds(self.worlds_folder))
        return paths

    async def _snapshot_world(self, path: Path, destination: Path):
        world = await asyncio.to_thread(World.open, path)
        await asyncio.to_thread(world.backup, destination)

    async def run_backup(self, destination: Path):
        destination = Path(destination)
        if not self.is_running:
            raise ProcessNotRunning()

        self.logger.info("[Container] Starting backup of %s", self.name)
        self._take_hold(destination)
        try:
            await self.terminal.pause_autosave()
        except Exception:
            self._release_hold(destination)
            raise

        failed: List[str] = []
        try:
            world_paths = self.world_paths()
        except Exception as e:
            self.logger.error("[Container] Unable to list worlds for %s: %s", self.name, e)
            world_paths = []
            failed.append(str(self.worlds_folder))

        for path in world_paths:
            try:
                await self._snapshot_world(path, destination)
            except Exception as e:
                self.logger.error("[Container] Backup of world %s failed: %s", path, e)
                failed.append(str(path))

        if self.extras:
            try:
                await asyncio.to_thread(ServerExtras.backup, self.name, self.extras, destination)
            except Exception as e:
                self.logger.error("[Container] Backup of extras for %s failed: %s", self.name, e)
                failed.append(f"{self.name} extras")

        self.last_backup_time = datetime.now()

        # A failed resume leaves the marker so the next startup retries it
        await self.terminal.resume_autosave()
        self._release_hold(destination)

        if failed:
            raise BackupsFailed(failed)
        self.logger.info("[Container] Backup of %s complete", self.name)

    async def cleanup_incomplete_backup(self, destination: Path):
        if not self.is_running:
            raise ProcessNotRunning()
        if not self.is_save_held(destination):
            raise HoldNotFound()

        self.logger.info("[Container] Found stale hold for %s, resuming autosave", self.name)
        await self.terminal.resume_autosave()
        self._release_hold(destination)


# ==========================================
# Loading from configuration
# ==========================================

def _make_channel(config: ContainerConfig, tools: ToolConfig) -> TerminalChannel:
    if config.ssh:
        host, port = parse_address(config.ssh)
        password = config.read_password()
        if password is None:
            raise MissingCredential(config.name, "ssh")
        host_keys = tools.host_keys or SSHHostKeyValidator(HOST_KEYS_FILE)
        return SecureShellChannel(config.name, host, port, tools.ssh_username, password, host_keys)

    if config.rcon:
        host, port = parse_address(config.rcon)
        password = config.read_password()
        if password is None:
            raise MissingCredential(config.name, "rcon")
        return RconChannel(config.name, host, port, password)

    return ProcessChannel(config.name, [tools.docker_path, "attach", "--sig-proxy=false", config.name])


def load_containers(config: BackupConfig, tools: ToolConfig) -> List[ContainerConnection]:
    """Build a connection per configured container. Broken entries are logged and skipped."""
    containers: List[ContainerConnection] = []
    entries = [(ContainerKind.BEDROCK, c) for c in config.containers.bedrock]
    entries += [(ContainerKind.JAVA, c) for c in config.containers.java]

    for kind, entry in entries:
        try:
            channel = _make_channel(entry, tools)
        except ConfigError as e:
            logger.error("[Container] Skipping %s: %s", entry.name, e)
            continue
        containers.append(ContainerConnection(
            entry.name,
            kind,
            channel,
            worlds=[Path(w) for w in entry.worlds],
            extras=[Path(e) for e in entry.extras] if entry.extras else None,
        ))

    # Older `servers:` form, Bedrock over docker attach, every world in the folder
    for name, folder in config.servers.items():
        channel = ProcessChannel(name, [tools.docker_path, "attach", "--sig-proxy=false", name])
        containers.append(ContainerConnection(name, ContainerKind.BEDROCK, channel, worlds_folder=Path(folder)))

    logger.info("[Container] Loaded %d containers", len(containers))
    return containers
