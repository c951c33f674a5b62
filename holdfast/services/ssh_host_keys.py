# holdfast/services/ssh_host_keys.py
"""
Trust-on-first-use host key store for SSH consoles.

Keys are kept one per line as "<ident> <keytype> <base64>", where ident is
the host (port 22) or "[host]:port", matching what paramiko hands to a
MissingHostKeyPolicy. An unknown host is recorded and accepted; a host whose
key differs from the recorded one is refused.
"""

import logging
import threading
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Tuple

import paramiko

from holdfast.core.errors import HostKeyChanged

logger = logging.getLogger(__name__)


class HostKeyStatus(str, Enum):
    OK = "ok"
    NOT_FOUND = "notFound"
    CHANGED = "changed"


def host_ident(host: str, port: int) -> str:
    if port == 22:
        return host
    return f"[{host}]:{port}"


class SSHHostKeyValidator:
    def __init__(self, keys_file: Path):
        self.keys_file = Path(keys_file)
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, Tuple[str, str]]:
        keys: Dict[str, Tuple[str, str]] = {}
        if not self.keys_file.exists():
            return keys
        with open(self.keys_file, "r", encoding="utf-8") as f:
            for line in f:
                parts = line.split()
                if len(parts) != 3 or line.startswith("#"):
                    continue
                ident, key_type, key_data = parts
                keys[ident] = (key_type, key_data)
        return keys

    def validate(self, ident: str, key: paramiko.PKey) -> HostKeyStatus:
        with self._lock:
            known: Optional[Tuple[str, str]] = self._load().get(ident)
        if known is None:
            return HostKeyStatus.NOT_FOUND
        if known == (key.get_name(), key.get_base64()):
            return HostKeyStatus.OK
        return HostKeyStatus.CHANGED

    def record(self, ident: str, key: paramiko.PKey):
        with self._lock:
            self.keys_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.keys_file, "a", encoding="utf-8") as f:
                f.write(f"{ident} {key.get_name()} {key.get_base64()}\n")
        logger.info("[SSH] Recorded new host key for %s (%s)", ident, key.get_name())

    def check(self, ident: str, key: paramiko.PKey):
        """Accept known and first-seen keys, raise HostKeyChanged for anything else."""
        status = self.validate(ident, key)
        if status == HostKeyStatus.NOT_FOUND:
            self.record(ident, key)
        elif status == HostKeyStatus.CHANGED:
            logger.critical("[SSH] Host key for %s does not match the recorded key", ident)
            raise HostKeyChanged(ident)


class TrustOnFirstUsePolicy(paramiko.MissingHostKeyPolicy):
    """Routes every host key through the validator. The client loads no known_hosts."""

    def __init__(self, validator: SSHHostKeyValidator):
        self.validator = validator

    def missing_host_key(self, client, hostname, key):
        self.validator.check(hostname, key)
