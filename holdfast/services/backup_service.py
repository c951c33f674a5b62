# holdfast/services/backup_service.py
"""
Backup Service (daemon driver)

Startup:
1. Check every configured world path exists
2. Force-write the health marker (fatal if it can't be written)
3. Load containers, attach them when player listeners are configured
4. Repair hold markers left by an earlier crash
5. Arm the schedule

Schedules:
- interval: optional startup delay, then a full pass every interval
- daily: a full pass at HH:MM every day
- player events: back up a container on login, logout, or last logout
"""

import asyncio
import logging
import os
import signal
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional, Set

from holdfast.core.backup_config import BackupConfig, DayTime, parse_interval
from holdfast.core.config import BACKUP_INTERVAL, DATA_DIR
from holdfast.core.errors import HostKeyChanged, ServiceError
from holdfast.services.backup_actor import BackupActor
from holdfast.services.container_connection import ContainerConnection, ToolConfig, load_containers

logger = logging.getLogger(__name__)

LOGIN_TRIGGERS = ("joined the game", "Player connected:")
LOGOUT_TRIGGERS = ("left the game", "Player disconnected:")


class BackupService:
    def __init__(self, config: BackupConfig,
                 backup_dir: Optional[Path] = None,
                 tools: Optional[ToolConfig] = None,
                 env_interval: Optional[str] = BACKUP_INTERVAL,
                 logger: Optional[logging.Logger] = None):
        self.config = config
        self.backup_dir = Path(backup_dir or config.backup_path or DATA_DIR)
        self.tools = tools or ToolConfig.from_config(config)
        self.env_interval = env_interval
        self.logger = logger or logging.getLogger(__name__)

        schedule = config.schedule
        self.actor = BackupActor(
            self.backup_dir,
            trim=config.trim,
            ownership=config.ownership,
            min_interval=schedule.parse_min_interval() if schedule else None,
            listeners=config.needs_listeners(),
            logger=self.logger,
        )
        self._schedule_task: Optional[asyncio.Task] = None
        self._event_tasks: Set[asyncio.Task] = set()
        self.next_backup_at: Optional[datetime] = None

    @property
    def containers(self) -> List[ContainerConnection]:
        return self.actor.containers

    # ==========================================
    # Lifecycle
    # ==========================================

    def validate(self):
        missing = [w for w in self.config.all_world_paths() if not Path(w).exists()]
        if missing:
            raise ServiceError("Configured worlds not found: " + ", ".join(missing))
        self._resolve_schedule()

    async def start(self, containers: Optional[List[ContainerConnection]] = None):
        self.validate()
        self.actor.mark_healthy(force_write=True)

        self.actor.update(containers if containers is not None else load_containers(self.config, self.tools))
        try:
            if self.actor.needs_listeners():
                for container in self.containers:
                    self._register_listeners(container)
                await self._attach_all()

            await self.actor.cleanup_containers()
        except HostKeyChanged:
            self.actor.mark_unhealthy()
            raise

        self._schedule_task = asyncio.create_task(self._schedule_loop())
        self._schedule_task.add_done_callback(self._on_schedule_done)
        self.logger.info("[BackupService] Started with %d containers, backups in %s",
                         len(self.containers), self.backup_dir)

    async def stop(self):
        tasks = [t for t in [self._schedule_task, *self._event_tasks] if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._schedule_task = None
        self._event_tasks.clear()

        for container in self.containers:
            try:
                await container.stop()
            except Exception as e:
                self.logger.warning("[BackupService] Error detaching %s: %s", container.name, e)
        self.logger.info("[BackupService] Stopped")

    async def wait(self):
        """Block until the schedule loop ends (it only ends on cancel or a fatal error)."""
        if self._schedule_task is not None:
            await self._schedule_task

    def _on_schedule_done(self, task: asyncio.Task):
        if task.cancelled() or task.exception() is None:
            return
        self._terminate(f"Schedule stopped: {task.exception()}")

    def _terminate(self, reason: str):
        """End the daemon. Host key mismatches and other fatal errors land here."""
        self.logger.critical("[BackupService] %s", reason)
        self.actor.mark_unhealthy()
        os.kill(os.getpid(), signal.SIGTERM)

    def track(self, task: asyncio.Task) -> asyncio.Task:
        """Hold a background backup task until it finishes; a host key change in it is fatal."""
        self._event_tasks.add(task)
        task.add_done_callback(self._on_tracked_done)
        return task

    def _on_tracked_done(self, task: asyncio.Task):
        self._event_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if isinstance(error, HostKeyChanged):
            self._terminate(f"Backup stopped: {error}")
        elif error is not None:
            self.logger.error("[BackupService] Background backup failed: %s", error)

    async def _attach_all(self):
        for container in self.containers:
            if container.is_running:
                continue
            try:
                await container.start()
            except HostKeyChanged:
                raise
            except Exception as e:
                self.logger.error("[BackupService] Unable to attach to %s: %s", container.name, e)

    # ==========================================
    # Scheduling
    # ==========================================

    def _resolve_schedule(self):
        """Returns ("interval", seconds, delay), ("daily", DayTime) or None for events only."""
        schedule = self.config.schedule
        if schedule is None:
            if not self.env_interval:
                raise ServiceError("No schedule configured and BACKUP_INTERVAL is not set")
            return "interval", parse_interval(self.env_interval), 0.0

        if schedule.interval and schedule.daily:
            raise ServiceError("Configure either schedule.interval or schedule.daily, not both")
        if schedule.daily:
            return "daily", schedule.daily
        interval = schedule.interval or self.env_interval
        if interval:
            seconds = parse_interval(interval)
            if seconds <= 0:
                raise ServiceError(f"Backup interval must be positive: {interval}")
            return "interval", seconds, schedule.parse_startup_delay() or 0.0
        return None

    async def _schedule_loop(self):
        plan = self._resolve_schedule()
        if plan is None:
            self.logger.info("[BackupService] No timed schedule, backing up on player events only")
            return
        if plan[0] == "daily":
            await self._daily_loop(plan[1])
        else:
            await self._interval_loop(plan[1], plan[2])

    async def _interval_loop(self, interval: float, startup_delay: float):
        self.logger.info("[BackupService] Backing up every %.0fs (startup delay %.0fs)", interval, startup_delay)
        if startup_delay > 0:
            await asyncio.sleep(startup_delay)
        while True:
            await self._run_pass(is_daily=False)
            self.next_backup_at = datetime.now() + timedelta(seconds=interval)
            await asyncio.sleep(interval)

    async def _daily_loop(self, daily: DayTime):
        self.logger.info("[BackupService] Backing up daily at %s", daily)
        while True:
            self.next_backup_at = daily.next_after(datetime.now())
            await asyncio.sleep(max((self.next_backup_at - datetime.now()).total_seconds(), 0))
            await self._run_pass(is_daily=True)

    async def _run_pass(self, is_daily: bool):
        if self.actor.needs_listeners():
            await self._attach_all()
        await self.actor.backup_all_containers(is_daily=is_daily)

    # ==========================================
    # Player events
    # ==========================================

    def _register_listeners(self, container: ContainerConnection):
        container.listen(LOGIN_TRIGGERS, lambda line, c=container: self.on_player_login(c, line))
        container.listen(LOGOUT_TRIGGERS, lambda line, c=container: self.on_player_logout(c, line))

    def _spawn_backup(self, container: ContainerConnection):
        self.track(asyncio.create_task(self.actor.backup_container(container)))

    def on_player_login(self, container: ContainerConnection, line: str):
        count = container.increment_player_count()
        self.logger.info("[BackupService] Player joined %s (%d online)", container.name, count)
        schedule = self.config.schedule
        if schedule and schedule.on_player_login:
            self._spawn_backup(container)

    def on_player_logout(self, container: ContainerConnection, line: str):
        count = container.decrement_player_count()
        self.logger.info("[BackupService] Player left %s (%d online)", container.name, count)
        schedule = self.config.schedule
        if schedule is None:
            return
        if schedule.on_player_logout or (schedule.on_last_logout and count == 0):
            self._spawn_backup(container)

    # ==========================================
    # Status
    # ==========================================

    def get_status(self) -> dict:
        return {
            "healthy": bool(self.actor.is_healthy),
            "busy": self.actor.is_busy(),
            "backup_dir": str(self.backup_dir),
            "next_backup_at": self.next_backup_at.isoformat() if self.next_backup_at else None,
            "last_pass_at": self.actor.last_pass_at.isoformat() if self.actor.last_pass_at else None,
            "containers": [container_status(c) for c in self.containers],
        }


def container_status(container: ContainerConnection) -> dict:
    return {
        "name": container.name,
        "kind": container.kind.value,
        "running": container.is_running,
        "players": container.player_count,
        "last_backup": container.last_backup_time.isoformat() if container.last_backup_time else None,
    }


# ==========================================
# Singleton
# ==========================================

_service: Optional[BackupService] = None


def get_backup_service() -> Optional[BackupService]:
    return _service


async def start_service(config: BackupConfig, **kwargs) -> BackupService:
    global _service
    service = BackupService(config, **kwargs)
    await service.start()
    _service = service
    return service


async def stop_service():
    global _service
    if _service is not None:
        await _service.stop()
        _service = None
