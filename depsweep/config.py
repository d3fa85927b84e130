"""Configuration management for depsweep.

Loads environment variables (optionally from a .env file) and provides
centralized config access.
"""
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

__version__ = "0.7.0"


class Config:
    """Configuration loader with environment variable support."""

    def __init__(self, env_file: Optional[str | Path] = None):
        """Initialize config by loading a .env file.

        Args:
            env_file: Path to a .env file (defaults to .env in the working directory)
        """
        env_path = Path(env_file) if env_file else Path.cwd() / ".env"
        load_dotenv(env_path)

    @staticmethod
    def _int_env(name: str, default: int) -> int:
        raw = os.getenv(name)
        if raw is None or raw.strip() == "":
            return default
        try:
            value = int(raw)
        except ValueError:
            raise ValueError(f"{name} must be an integer, got {raw!r}")
        if value < 1:
            raise ValueError(f"{name} must be at least 1, got {value}")
        return value

    @property
    def max_workers(self) -> int:
        """Upper bound on concurrent file workers.

        Returns:
            DEPSWEEP_MAX_WORKERS, or min(32, cpu_count + 4)
        """
        return self._int_env("DEPSWEEP_MAX_WORKERS", min(32, (os.cpu_count() or 1) + 4))

    @property
    def memory_limit_mb(self) -> int:
        """Resident memory ceiling (MiB) above which the worker pool shrinks."""
        return self._int_env("DEPSWEEP_MEMORY_LIMIT_MB", 1024)

    @property
    def max_file_bytes(self) -> int:
        """Source files larger than this are skipped by the scanner."""
        return self._int_env("DEPSWEEP_MAX_FILE_BYTES", 2_000_000)

    @property
    def cache_dir(self) -> Optional[Path]:
        """Directory for the persistent usage cache.

        Returns:
            Path from DEPSWEEP_CACHE_DIR, or None for an in-memory cache
        """
        value = os.getenv("DEPSWEEP_CACHE_DIR")
        return Path(value) if value else None

    @property
    def log_level(self) -> str:
        return os.getenv("DEPSWEEP_LOG_LEVEL", "WARNING").upper()


# Singleton instance
_config = None


def get_config() -> Config:
    """Get or create singleton Config instance.

    Returns:
        Config instance
    """
    global _config
    if _config is None:
        _config = Config()
    return _config
