# config.py
from dataclasses import dataclass
from typing import Optional

NETWORKS = ("main", "test")


@dataclass
class WorkerConfig:
    batch_limit: int = 50        # jobs claimed per cycle
    max_parallel: int = 8        # concurrent broker calls
    visibility_timeout: float = 60.0
    poll_interval: float = 1.0
    max_attempts: Optional[int] = None

    def __post_init__(self):
        if self.batch_limit < 1:
            raise ValueError("batch_limit must be at least 1")
        if self.max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        if self.visibility_timeout <= 0:
            raise ValueError("visibility_timeout must be positive")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_storage(cls, db, **overrides):
        """Build from the store's config table; explicit overrides (not None) win."""
        max_attempts = db.get_config("max_attempts")
        values = {
            "batch_limit": int(db.get_config("batch_limit", default="50")),
            "max_parallel": int(db.get_config("max_parallel", default="8")),
            "visibility_timeout": float(db.get_config("visibility_timeout", default="60")),
            "poll_interval": float(db.get_config("poll_interval", default="1.0")),
            "max_attempts": int(max_attempts) if max_attempts else None,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass
class StreamConfig:
    network: str = "main"
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    max_active_time: Optional[str] = None   # e.g. "60s", private kinds only
    ping_interval: float = 20.0
    backoff_floor: float = 1.0
    backoff_cap: float = 30.0
    auth_expiry: float = 60.0

    def __post_init__(self):
        if self.network not in NETWORKS:
            raise ValueError(f"network must be one of {NETWORKS}, got {self.network!r}")
        if self.backoff_floor <= 0 or self.backoff_cap < self.backoff_floor:
            raise ValueError("backoff_cap must be >= backoff_floor > 0")

    def __repr__(self):
        # keep the secret out of logs and tracebacks
        return (f"StreamConfig(network={self.network!r}, api_key={self.api_key!r}, "
                f"api_secret={'***' if self.api_secret else None}, max_active_time={self.max_active_time!r})")

    @property
    def has_credentials(self):
        return bool(self.api_key and self.api_secret)
