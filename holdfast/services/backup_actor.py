# holdfast/services/backup_actor.py
"""
Backup coordinator.

Every backup request goes through one BackupActor, which owns two in-flight
task slots (one single-container backup, one full pass):

- A single backup requested while a full pass runs waits for the pass.
- A single backup of a container already being backed up waits for that run.
- A single backup of a different container waits, then runs.
- A full pass requested while another full pass runs waits for it.
- A full pass requested while a single backup runs is accepted at once; it
  waits for the single backup and then skips that container.

After each pass the ownership fixup and retention run, and the health
marker reflects whether the pass succeeded. Container failures are logged
and counted; they never abort a pass.

The slots are only touched from coroutines on the event loop, never across
an await, so no lock is needed.
"""

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

from holdfast.core.backup_config import OwnershipConfig, TrimConfig
from holdfast.core.config import HEALTH_FILE_NAME
from holdfast.core.errors import HostKeyChanged, ServiceError
from holdfast.services.container_connection import ContainerConnection
from holdfast.services.retention import ArtifactKind, fix_ownership, trim_backups

logger = logging.getLogger(__name__)

# Allowance for schedule jitter when applying the minimum interval
MIN_INTERVAL_SLACK = 60


class BackupActor:
    def __init__(self, backup_dir: Path,
                 containers: Optional[List[ContainerConnection]] = None,
                 trim: Optional[TrimConfig] = None,
                 ownership: Optional[OwnershipConfig] = None,
                 min_interval: Optional[float] = None,
                 listeners: bool = False,
                 logger: Optional[logging.Logger] = None):
        self.backup_dir = Path(backup_dir)
        self.containers: List[ContainerConnection] = list(containers or [])
        self.trim = trim
        self.ownership = ownership
        self.min_interval = min_interval
        self.listeners = listeners
        self.logger = logger or logging.getLogger(__name__)

        self._current_single: Optional[Tuple[ContainerConnection, asyncio.Task]] = None
        self._current_full: Optional[asyncio.Task] = None
        self.is_healthy: Optional[bool] = None
        self.last_pass_at: Optional[datetime] = None

    # ==========================================
    # State
    # ==========================================

    def update(self, containers: List[ContainerConnection]):
        self.containers = list(containers)

    def needs_listeners(self) -> bool:
        return self.listeners

    def find(self, name: str) -> Optional[ContainerConnection]:
        return next((c for c in self.containers if c.name == name), None)

    def is_busy(self) -> bool:
        return self._single_in_flight() is not None or self._full_in_flight() is not None

    def should_run_backup(self, container: ContainerConnection) -> bool:
        if self.min_interval is None or container.last_backup_time is None:
            return True
        elapsed = (datetime.now() - container.last_backup_time).total_seconds()
        return elapsed >= self.min_interval - MIN_INTERVAL_SLACK

    # ==========================================
    # Requests
    # ==========================================

    async def backup_container(self, container: ContainerConnection):
        while True:
            full = self._full_in_flight()
            if full is not None:
                self.logger.debug("[BackupActor] %s is covered by the running full pass", container.name)
                await asyncio.shield(full)
                return

            single = self._single_in_flight()
            if single is None:
                break

            current, task = single
            if current is container:
                self.logger.debug("[BackupActor] Backup of %s already running", container.name)
                await asyncio.shield(task)
                return
            await asyncio.shield(task)

        if not self.should_run_backup(container):
            self.logger.info("[BackupActor] Skipping %s, last backup was too recent", container.name)
            return

        task = asyncio.create_task(self._run_single(container))
        self._current_single = (container, task)
        await asyncio.shield(task)

    async def backup_all_containers(self, is_daily: bool = False):
        full = self._full_in_flight()
        if full is not None:
            self.logger.debug("[BackupActor] Full pass already running")
            await asyncio.shield(full)
            return

        skip, single_task = self._single_in_flight() or (None, None)
        task = asyncio.create_task(self._run_full(is_daily, skip, single_task))
        self._current_full = task
        await asyncio.shield(task)

    def _single_in_flight(self) -> Optional[Tuple[ContainerConnection, asyncio.Task]]:
        if self._current_single is not None and self._current_single[1].done():
            self._current_single = None
        return self._current_single

    def _full_in_flight(self) -> Optional[asyncio.Task]:
        if self._current_full is not None and self._current_full.done():
            self._current_full = None
        return self._current_full

    # ==========================================
    # Work
    # ==========================================

    async def _backup_one(self, container: ContainerConnection) -> bool:
        try:
            async with container.attached():
                await container.run_backup(self.backup_dir)
            return True
        except HostKeyChanged:
            self.mark_unhealthy()
            raise
        except Exception as e:
            self.logger.error("[BackupActor] Backup of %s failed: %s", container.name, e)
            return False

    async def _run_single(self, container: ContainerConnection):
        ok = await self._backup_one(container)
        await self._run_post_backup_tasks()
        self._update_health(ok)

    async def _run_full(self, is_daily: bool, skip: Optional[ContainerConnection],
                        single_task: Optional[asyncio.Task]):
        if single_task is not None:
            await asyncio.shield(single_task)

        self.logger.info("[BackupActor] Starting %s backup of %d containers",
                         "daily" if is_daily else "full", len(self.containers))
        failures = 0
        for container in list(self.containers):
            if container is skip:
                self.logger.debug("[BackupActor] Skipping %s, it was just backed up", container.name)
                continue
            if not is_daily and not self.should_run_backup(container):
                self.logger.info("[BackupActor] Skipping %s, last backup was too recent", container.name)
                continue
            if not await self._backup_one(container):
                failures += 1

        await self._run_post_backup_tasks()
        self._update_health(failures == 0)
        self.last_pass_at = datetime.now()
        if failures:
            self.logger.error("[BackupActor] Backup pass finished with %d failed containers", failures)
        else:
            self.logger.info("[BackupActor] Backup pass complete")

    async def _run_post_backup_tasks(self):
        if self.ownership is not None:
            try:
                await asyncio.to_thread(fix_ownership, self.backup_dir, self.ownership)
            except Exception as e:
                self.logger.error("[BackupActor] Ownership fixup failed: %s", e)

        if self.trim is not None:
            for kind in (ArtifactKind.WORLD, ArtifactKind.EXTRAS):
                try:
                    await asyncio.to_thread(
                        trim_backups,
                        self.backup_dir,
                        kind,
                        self.trim.trim_days,
                        self.trim.keep_days,
                        self.trim.min_keep,
                    )
                except Exception as e:
                    self.logger.error("[BackupActor] Trimming %s backups failed: %s", kind.value, e)

    # ==========================================
    # Crash recovery
    # ==========================================

    async def _cleanup_one(self, container: ContainerConnection) -> bool:
        try:
            async with container.attached():
                await container.cleanup_incomplete_backup(self.backup_dir)
            return True
        except HostKeyChanged:
            raise
        except Exception as e:
            self.logger.error("[BackupActor] Unable to clean up interrupted backup of %s: %s", container.name, e)
            return False

    async def cleanup_containers(self):
        """Resume autosave on every container left holding a save by an earlier crash."""
        held = [c for c in self.containers if c.is_save_held(self.backup_dir)]
        if not held:
            return
        self.logger.info("[BackupActor] Cleaning up %d interrupted backups", len(held))
        await asyncio.gather(*(self._cleanup_one(c) for c in held))

    # ==========================================
    # Health marker
    # ==========================================

    @property
    def health_file(self) -> Path:
        return self.backup_dir / HEALTH_FILE_NAME

    def _update_health(self, ok: bool):
        if ok:
            self.mark_healthy()
        else:
            self.mark_unhealthy()

    def mark_healthy(self, force_write: bool = False):
        if self.is_healthy and not force_write:
            return
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            self.health_file.touch(exist_ok=True)
        except OSError as e:
            if force_write:
                raise ServiceError(f"Unable to write health marker {self.health_file}: {e}")
            self.logger.error("[BackupActor] Unable to write health marker: %s", e)
            return
        self.is_healthy = True

    def mark_unhealthy(self):
        try:
            self.health_file.unlink(missing_ok=True)
        except OSError as e:
            self.logger.error("[BackupActor] Unable to remove health marker: %s", e)
        self.is_healthy = False
