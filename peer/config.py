"""
Centralized configuration for the Beefy peer.

Configuration is loaded from (in order of precedence):
1. Environment variables
2. .env file (if exists)
3. Default values

Usage:
    from config import config
    print(config.REDIS_URL)
    print(config.INACTIVITY_TIMEOUT_SECONDS)
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Load .env file if it exists
env_path = Path(__file__).parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)


def get_env(key: str, default: str = "") -> str:
    """Get environment variable with default."""
    return os.environ.get(key, default)


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    val = os.environ.get(key, "").lower()
    if val in ("true", "1", "yes", "on"):
        return True
    if val in ("false", "0", "no", "off"):
        return False
    return default


def get_env_int(key: str, default: int = 0) -> int:
    """Get integer environment variable."""
    try:
        return int(os.environ.get(key, str(default)))
    except ValueError:
        return default


def get_env_float(key: str, default: float = 0.0) -> float:
    """Get float environment variable."""
    try:
        return float(os.environ.get(key, str(default)))
    except ValueError:
        return default


def default_client_id_path() -> str:
    """Location of the persisted client identity file."""
    return str(Path.home() / ".beefy" / "client_id")


@dataclass
class PeerConfig:
    """Peer configuration."""
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    DEBUG: bool = False

    # Backends
    REDIS_URL: str = "redis://localhost:6379/0"
    POSTGRES_URL: str = "postgresql://localhost:5432/beefy"

    # Live play
    INACTIVITY_TIMEOUT_SECONDS: int = 60
    WATCHDOG_INTERVAL_SECONDS: float = 1.0
    ECHO_SUPPRESS_SECONDS: float = 0.05

    # Room settings
    ROOM_CODE_LENGTH: int = 4
    ROOM_CODE_MAX_ATTEMPTS: int = 5
    WAITING_ROOM_TTL_MINUTES: int = 60
    FINISHED_ROOM_TTL_HOURS: int = 24

    # Identity
    CLIENT_ID_PATH: str = ""

    @classmethod
    def from_env(cls) -> "PeerConfig":
        """Load configuration from environment variables."""
        return cls(
            ENVIRONMENT=get_env("ENVIRONMENT", "development"),
            LOG_LEVEL=get_env("LOG_LEVEL", "INFO"),
            DEBUG=get_env_bool("DEBUG", False),
            REDIS_URL=get_env("REDIS_URL", "redis://localhost:6379/0"),
            POSTGRES_URL=get_env("POSTGRES_URL", "postgresql://localhost:5432/beefy"),
            INACTIVITY_TIMEOUT_SECONDS=get_env_int("INACTIVITY_TIMEOUT_SECONDS", 60),
            WATCHDOG_INTERVAL_SECONDS=get_env_float("WATCHDOG_INTERVAL_SECONDS", 1.0),
            ECHO_SUPPRESS_SECONDS=get_env_float("ECHO_SUPPRESS_SECONDS", 0.05),
            ROOM_CODE_LENGTH=get_env_int("ROOM_CODE_LENGTH", 4),
            ROOM_CODE_MAX_ATTEMPTS=get_env_int("ROOM_CODE_MAX_ATTEMPTS", 5),
            WAITING_ROOM_TTL_MINUTES=get_env_int("WAITING_ROOM_TTL_MINUTES", 60),
            FINISHED_ROOM_TTL_HOURS=get_env_int("FINISHED_ROOM_TTL_HOURS", 24),
            CLIENT_ID_PATH=get_env("CLIENT_ID_PATH", default_client_id_path()),
        )


# Global config instance - loaded once at module import
config = PeerConfig.from_env()


def reload_config() -> PeerConfig:
    """Reload configuration from environment (useful for testing)."""
    global config
    config = PeerConfig.from_env()
    return config
