"""Bearer token authentication for the control API."""

import base64
import hmac
import logging
import uuid
from pathlib import Path
from typing import Optional

from fastapi import HTTPException, Request

from holdfast.core.config import TOKEN_FILE

logger = logging.getLogger(__name__)


def generate_token() -> str:
    return base64.b64encode(uuid.uuid4().bytes).decode("ascii")


def ensure_token(path: Optional[Path] = None) -> Path:
    """Create the token file on first start. An existing token is left alone."""
    path = Path(path or TOKEN_FILE)
    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(generate_token() + "\n", encoding="utf-8")
        path.chmod(0o600)
        logger.info("[Auth] Generated API token in %s", path)
    return path


def read_token(path: Optional[Path] = None) -> str:
    path = Path(path or TOKEN_FILE)
    try:
        token = path.read_text(encoding="utf-8").strip()
    except OSError as e:
        logger.error("[Auth] Unable to read token file %s: %s", path, e)
        raise HTTPException(status_code=500, detail="Token file could not be read")
    if not token:
        raise HTTPException(status_code=500, detail="Token file is empty")
    return token


async def require_token(request: Request) -> str:
    """Require `Authorization: Bearer <token>` matching the token file."""
    expected = read_token(TOKEN_FILE)
    header = request.headers.get("authorization", "")
    scheme, _, supplied = header.partition(" ")
    supplied = supplied.strip()
    if scheme.lower() != "bearer" or not hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Missing or invalid bearer token")
    return supplied
