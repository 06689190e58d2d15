import os
from dataclasses import dataclass, field
from typing import List, Optional


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _list_env(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


@dataclass
class Settings:
    database_url: Optional[str] = None
    database_name: str = "switchlist"
    port: int = 8000
    log_level: str = "INFO"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    # Bounds the work a single switch-list build does per industry
    max_orders_per_industry: int = 50
    # Cars idle at an industry this many sessions are hauled back to their home yard; 0 disables
    return_home_after_sessions: int = 1

    def validate(self) -> None:
        if self.max_orders_per_industry < 1:
            raise ValueError("MAX_ORDERS_PER_INDUSTRY must be >= 1.")
        if self.return_home_after_sessions < 0:
            raise ValueError("RETURN_HOME_AFTER_SESSIONS must be >= 0.")
        if not (1 <= self.port <= 65535):
            raise ValueError("PORT must be in [1, 65535].")

    @classmethod
    def from_env(cls) -> "Settings":
        settings = cls(
            database_url=os.getenv("DATABASE_URL"),
            database_name=os.getenv("DATABASE_NAME", "switchlist"),
            port=_int_env("PORT", 8000),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            cors_origins=_list_env("CORS_ORIGINS", "*"),
            max_orders_per_industry=_int_env("MAX_ORDERS_PER_INDUSTRY", 50),
            return_home_after_sessions=_int_env("RETURN_HOME_AFTER_SESSIONS", 1),
        )
        settings.validate()
        return settings
