import logging
import os
from pathlib import Path
from typing import Optional

# ==========================================
# Path Configuration
# ==========================================

CORE_DIR = Path(__file__).resolve().parent
PACKAGE_DIR = CORE_DIR.parent
ROOT_DIR = PACKAGE_DIR.parent

ENV_FILE = ROOT_DIR / ".env"

DEFAULT_CONFIG_PATH = Path("/config")
DEFAULT_DATA_PATH = Path("/data")
DEFAULT_OLD_DATA_PATH = Path("/backups")

FALLBACK_CONFIG_FILE = "config.json"


def _data_dir() -> Path:
    env_path = os.getenv("DATA_DIR")
    if env_path:
        return Path(env_path).expanduser()
    if DEFAULT_DATA_PATH.exists():
        return DEFAULT_DATA_PATH
    return DEFAULT_OLD_DATA_PATH


def _config_dir() -> Path:
    env_path = os.getenv("CONFIG_DIR")
    if env_path:
        return Path(env_path).expanduser()
    if DEFAULT_CONFIG_PATH.exists():
        return DEFAULT_CONFIG_PATH
    return _data_dir()


DATA_DIR = _data_dir()
CONFIG_DIR = _config_dir()

CONFIG_FILE = CONFIG_DIR / os.getenv("CONFIG_FILE", "config.yml")
HOST_KEYS_FILE = CONFIG_DIR / os.getenv("HOST_KEYS_FILE", ".authorizedKeys")
TOKEN_FILE = CONFIG_DIR / os.getenv("TOKEN_FILE", ".token")

HEALTH_FILE_NAME = ".service_is_healthy"

# ==========================================
# External Tools
# ==========================================

DOCKER_PATH = os.getenv("DOCKER_PATH", "/usr/bin/docker")
SSH_USERNAME = os.getenv("SSH_USERNAME", "holdfast")

# Deprecated: superseded by schedule.interval in the config file
BACKUP_INTERVAL: Optional[str] = os.getenv("BACKUP_INTERVAL")

# ==========================================
# App Configuration
# ==========================================

APP_VERSION = os.getenv("APP_VERSION", "1.1.0")
PORT = int(os.getenv("PORT", "8080"))
HOST = os.getenv("HOST", "0.0.0.0")

# ==========================================
# Logging
# ==========================================

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

LOG_FORMAT = "[%(asctime)s][%(levelname)-8s] %(message)s"
LOG_FORMAT_DETAILED = "[%(asctime)s][%(levelname)-8s] %(message)s (%(filename)s:%(lineno)d)"


def resolve_config_file(explicit: Optional[str] = None) -> Path:
    """Pick the config file: explicit path, then config.yml, then the older config.json."""
    if explicit:
        return Path(explicit).expanduser()
    if CONFIG_FILE.exists():
        return CONFIG_FILE
    logging.getLogger(__name__).warning(
        "%s not found, using older default: %s", CONFIG_FILE.name, FALLBACK_CONFIG_FILE
    )
    return CONFIG_DIR / FALLBACK_CONFIG_FILE


def configure_logging(level: Optional[str] = None) -> None:
    """Configure the root logger once, at the outermost entry point."""
    name = (level or os.getenv("LOG_LEVEL", "info")).lower()
    if name == "trace":
        log_level, fmt = TRACE, LOG_FORMAT_DETAILED
    elif name == "debug":
        log_level, fmt = logging.DEBUG, LOG_FORMAT_DETAILED
    else:
        log_level, fmt = getattr(logging, name.upper(), logging.INFO), LOG_FORMAT
    logging.basicConfig(level=log_level, format=fmt, force=True)
    # paramiko is chatty at debug
    logging.getLogger("paramiko").setLevel(max(log_level, logging.WARNING))
