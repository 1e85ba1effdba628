import os
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

# Room identifiers and tokens
ID_LENGTH = 20
TOKEN_LENGTH = 32
ID_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"

# Direct channel framing
CHUNK_SIZE = 16 * 1024
HIGH_WATERMARK = CHUNK_SIZE * 16
LOW_WATERMARK = CHUNK_SIZE * 8
META_PREFIX = "meta:"
DEFAULT_MIME_TYPE = "application/octet-stream"

DEFAULT_ICE_SERVERS: List[Dict[str, Any]] = [{"urls": "stun:stun.l.google.com:19302"}]

ENV_PREFIX = "P2PDROP_"


class Settings(BaseModel):
    """Runtime settings for the relay server and the command-line peers."""

    host: str = "0.0.0.0"
    port: int = 8081
    max_members: int = 2
    keepalive_interval: float = 25.0
    turn_credentials_url: Optional[str] = None
    http_origin: str = "http://localhost:8081"
    signaling_url: str = "ws://localhost:8081/ws"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "Settings":
        """Build settings from P2PDROP_* environment variables"""
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is not None and raw != "":
                values[name] = raw
        return cls(**values)
