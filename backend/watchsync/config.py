import os
from typing import List, Optional

from pydantic import BaseModel


def _split(value: str) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


class Settings(BaseModel):
    allowed_origins: List[str] = ["*"]
    log_level: str = "INFO"

    session_max_age: float = 24 * 3600  # 24 hours
    viewer_ttl: float = 5 * 60
    sweep_interval: float = 60.0
    snapshot_cache_ttl: float = 5.0

    elevated_viewers: List[str] = []
    default_role: str = "standard"
    identity_url: Optional[str] = None

    proxy_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            allowed_origins=_split(os.getenv("ALLOWED_ORIGINS", "*")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            session_max_age=float(os.getenv("SESSION_MAX_AGE", 24 * 3600)),
            viewer_ttl=float(os.getenv("VIEWER_TTL", 5 * 60)),
            sweep_interval=float(os.getenv("SWEEP_INTERVAL", 60)),
            snapshot_cache_ttl=float(os.getenv("SNAPSHOT_CACHE_TTL", 5)),
            elevated_viewers=_split(os.getenv("ELEVATED_VIEWERS", "")),
            default_role=os.getenv("DEFAULT_ROLE", "standard"),
            identity_url=os.getenv("IDENTITY_URL") or None,
            proxy_url=os.getenv("PROXY_URL") or None,
        )
