"""
Backup configuration file model.

Handles:
- Loading config.yml / config.json (YAML is a superset of JSON)
- Container, trim, ownership and schedule sections
- Interval ("3h", "30m", "90s", "600"), daily time ("HH:MM") and ownership parsing
- Password / password file resolution for RCON and SSH containers
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml

from holdfast.core.errors import ConfigError, InvalidSyntax

logger = logging.getLogger(__name__)


def _pick(data: dict, *keys, default=None):
    """Read the first present key, accepting camelCase and snake_case spellings."""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def parse_interval(interval: Optional[str]) -> Optional[float]:
    """Parse an interval string into seconds. Suffixes h/m/s, bare numbers are seconds."""
    if interval is None:
        return None
    text = str(interval).strip()
    scales = {"h": 3600.0, "m": 60.0, "s": 1.0}
    scale = scales.get(text[-1:].lower())
    number = text[:-1] if scale else text
    try:
        value = float(number)
    except ValueError:
        raise InvalidSyntax(text, "interval")
    return value * (scale or 1.0)


def parse_ownership(ownership: str) -> Tuple[Optional[int], Optional[int]]:
    """Parse "uid:gid", "uid", ":gid" or ":" into (uid, gid)."""
    if ownership == ":":
        return None, None

    parts = [p for p in ownership.split(":") if p != ""]
    if len(parts) > 2 or ownership.count(":") > 1:
        raise InvalidSyntax(ownership, "ownership")
    try:
        values = [int(p) for p in parts]
    except ValueError:
        raise InvalidSyntax(ownership, "ownership")
    if any(v < 0 for v in values) or not values:
        raise InvalidSyntax(ownership, "ownership")

    if len(values) == 1 and ownership.startswith(":"):
        return None, values[0]
    if len(values) == 1:
        return values[0], None
    return values[0], values[1]


def parse_permissions(permissions: str) -> int:
    try:
        value = int(str(permissions), 8)
    except ValueError:
        raise InvalidSyntax(str(permissions), "permissions")
    if value < 0 or value > 0o777:
        raise ConfigError(f"Permissions out of bounds: {permissions}")
    return value


@dataclass(frozen=True)
class DayTime:
    """A time of day, used for daily backups."""
    hour: int
    minute: int

    @classmethod
    def parse(cls, text: str) -> "DayTime":
        try:
            parsed = datetime.strptime(str(text).strip(), "%H:%M")
        except ValueError:
            raise InvalidSyntax(str(text), "daily time")
        return cls(hour=parsed.hour, minute=parsed.minute)

    def next_after(self, moment: datetime) -> datetime:
        candidate = moment.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if candidate <= moment:
            candidate += timedelta(days=1)
        return candidate

    def __str__(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"


@dataclass
class TrimConfig:
    trim_days: Optional[int] = None
    keep_days: Optional[int] = None
    min_keep: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict) -> "TrimConfig":
        return cls(
            trim_days=_pick(data, "trimDays", "trim_days"),
            keep_days=_pick(data, "keepDays", "keep_days"),
            min_keep=_pick(data, "minKeep", "min_keep"),
        )


@dataclass
class OwnershipConfig:
    chown: Optional[str] = None
    permissions: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "OwnershipConfig":
        chown = _pick(data, "chown")
        permissions = _pick(data, "permissions")
        return cls(
            chown=str(chown) if chown is not None else None,
            permissions=str(permissions) if permissions is not None else None,
        )

    def parse_owner_and_group(self) -> Tuple[Optional[int], Optional[int]]:
        if self.chown is None:
            return None, None
        return parse_ownership(self.chown)

    def parse_posix_permissions(self) -> Optional[int]:
        if self.permissions is None:
            return None
        return parse_permissions(self.permissions)


@dataclass
class ScheduleConfig:
    # Interval based
    daily: Optional[DayTime] = None
    interval: Optional[str] = None
    startup_delay: Optional[str] = None

    # Event based
    on_player_login: Optional[bool] = None
    on_player_logout: Optional[bool] = None
    on_last_logout: Optional[bool] = None
    min_interval: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "ScheduleConfig":
        daily = _pick(data, "daily")
        interval = _pick(data, "interval")
        startup_delay = _pick(data, "startupDelay", "startup_delay")
        min_interval = _pick(data, "minInterval", "min_interval")
        return cls(
            daily=DayTime.parse(daily) if daily is not None else None,
            interval=str(interval) if interval is not None else None,
            startup_delay=str(startup_delay) if startup_delay is not None else None,
            on_player_login=_pick(data, "onPlayerLogin", "on_player_login"),
            on_player_logout=_pick(data, "onPlayerLogout", "on_player_logout"),
            on_last_logout=_pick(data, "onLastLogout", "on_last_logout"),
            min_interval=str(min_interval) if min_interval is not None else None,
        )

    def parse_interval(self) -> Optional[float]:
        return parse_interval(self.interval)

    def parse_min_interval(self) -> Optional[float]:
        return parse_interval(self.min_interval)

    def parse_startup_delay(self) -> Optional[float]:
        return parse_interval(self.startup_delay)


@dataclass
class ContainerConfig:
    name: str
    worlds: List[str] = field(default_factory=list)
    extras: Optional[List[str]] = None
    rcon: Optional[str] = None
    ssh: Optional[str] = None
    password: Optional[str] = None
    password_file: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "ContainerConfig":
        if "name" not in data:
            raise ConfigError("Container entry is missing 'name'")
        extras = _pick(data, "extras")
        password = _pick(data, "password")
        return cls(
            name=str(data["name"]),
            worlds=[str(w) for w in _pick(data, "worlds", default=[])],
            extras=[str(e) for e in extras] if extras is not None else None,
            rcon=_pick(data, "rcon"),
            ssh=_pick(data, "ssh"),
            password=str(password) if password is not None else None,
            password_file=_pick(data, "passwordFile", "password_file"),
        )

    def read_password(self) -> Optional[str]:
        """Resolve the password, preferring the password file (rcon-cli YAML format)."""
        if self.password_file:
            path = Path(self.password_file)
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ConfigError(f"Unable to read the password file at {path}: {e}")
            password = data.get("password") if isinstance(data, dict) else None
            if password is None:
                raise ConfigError(f"Unable to read the password from the YAML file at: {path}")
            return str(password)
        return self.password


@dataclass
class ContainersConfig:
    bedrock: List[ContainerConfig] = field(default_factory=list)
    java: List[ContainerConfig] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "ContainersConfig":
        return cls(
            bedrock=[ContainerConfig.from_dict(c) for c in data.get("bedrock") or []],
            java=[ContainerConfig.from_dict(c) for c in data.get("java") or []],
        )


@dataclass
class BackupConfig:
    """Top level backup configuration (config.yml / config.json)"""
    docker_path: Optional[str] = None
    backup_path: Optional[str] = None
    ssh_username: Optional[str] = None
    servers: Dict[str, str] = field(default_factory=dict)
    containers: ContainersConfig = field(default_factory=ContainersConfig)
    trim: Optional[TrimConfig] = None
    ownership: Optional[OwnershipConfig] = None
    schedule: Optional[ScheduleConfig] = None
    logging_level: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "BackupConfig":
        if not isinstance(data, dict):
            raise ConfigError("Configuration root must be a mapping")

        trim = _pick(data, "trim")
        ownership = _pick(data, "ownership")
        schedule = _pick(data, "schedule")
        logging_level = _pick(data, "loggingLevel", "logging_level")
        if logging_level is not None and str(logging_level).lower() not in ("debug", "trace"):
            raise ConfigError(f"Unknown loggingLevel '{logging_level}', expected debug or trace")

        return cls(
            docker_path=_pick(data, "dockerPath", "docker_path"),
            backup_path=_pick(data, "backupPath", "backup_path"),
            ssh_username=_pick(data, "sshUsername", "ssh_username"),
            servers={str(k): str(v) for k, v in (_pick(data, "servers", default={}) or {}).items()},
            containers=ContainersConfig.from_dict(_pick(data, "containers", default={}) or {}),
            trim=TrimConfig.from_dict(trim) if trim is not None else None,
            ownership=OwnershipConfig.from_dict(ownership) if ownership is not None else None,
            schedule=ScheduleConfig.from_dict(schedule) if schedule is not None else None,
            logging_level=str(logging_level).lower() if logging_level is not None else None,
        )

    def all_world_paths(self) -> List[str]:
        worlds: List[str] = []
        for container in self.containers.bedrock + self.containers.java:
            worlds.extend(container.worlds)
        worlds.extend(self.servers.values())
        return worlds

    def needs_listeners(self) -> bool:
        schedule = self.schedule
        if schedule is None:
            return False
        return bool(schedule.on_player_login or schedule.on_player_logout or schedule.on_last_logout)


def load_backup_config_text(text: str) -> BackupConfig:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Unable to parse configuration: {e}")
    return BackupConfig.from_dict(data or {})


def load_backup_config(path: Path) -> BackupConfig:
    """Load the backup config from a YAML or JSON file."""
    logger.info("[Config] Loading configuration from: %s", path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except OSError as e:
        raise ConfigError(f"Unable to read configuration file {path}: {e}")
    return load_backup_config_text(text)
