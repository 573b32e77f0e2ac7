"""Configuration of the analyzer and storage services."""

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

ENV_PREFIX = "LAYER_SIZES_"


def _env(name: str, default: str) -> str:
    return os.getenv(f"{ENV_PREFIX}{name}", default)


@dataclass
class AnalyzerConfig:
    """Analyzer service configuration."""

    host: str = "0.0.0.0"
    port: int = 5050
    # seconds a task may spend pulling, copying and extracting
    task_timeout: float = 300.0
    workers: int = 1
    storage_dir: Path = field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "container-layer-sizes" / "storage"
    )
    scratch_dir: Optional[Path] = None
    registry_timeout: int = 300
    insecure_registries: Tuple[str, ...] = ("localhost", "127.0.0.1")
    platform: str = "linux/amd64"
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.workers < 1:
            raise ValueError(f"At least one worker is required, got {self.workers}")
        if self.task_timeout <= 0:
            raise ValueError(f"Task timeout must be positive, got {self.task_timeout}")
        self.storage_dir = Path(self.storage_dir)
        if self.scratch_dir is not None:
            self.scratch_dir = Path(self.scratch_dir)

    @classmethod
    def from_env(cls) -> "AnalyzerConfig":
        """Create the configuration from LAYER_SIZES_* environment variables."""
        defaults = cls()
        insecure = _env("INSECURE_REGISTRIES", "")
        scratch_dir = _env("SCRATCH_DIR", "")
        return cls(
            host=_env("HOST", defaults.host),
            port=int(_env("PORT", str(defaults.port))),
            task_timeout=float(_env("TASK_TIMEOUT", str(defaults.task_timeout))),
            workers=int(_env("WORKERS", str(defaults.workers))),
            storage_dir=Path(_env("STORAGE_DIR", str(defaults.storage_dir))),
            scratch_dir=Path(scratch_dir) if scratch_dir else None,
            registry_timeout=int(_env("REGISTRY_TIMEOUT", str(defaults.registry_timeout))),
            insecure_registries=(
                tuple(h.strip() for h in insecure.split(",") if h.strip())
                if insecure
                else defaults.insecure_registries
            ),
            platform=_env("PLATFORM", defaults.platform),
            log_level=_env("LOG_LEVEL", defaults.log_level),
        )


@dataclass
class StorageConfig:
    """Storage service configuration."""

    host: str = "0.0.0.0"
    port: int = 4040
    db_path: Path = Path("./database.sqlite3")
    log_level: str = "WARNING"

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)

    @classmethod
    def from_env(cls) -> "StorageConfig":
        """Create the configuration from LAYER_SIZES_* environment variables."""
        defaults = cls()
        return cls(
            host=_env("STORAGE_HOST", defaults.host),
            port=int(_env("STORAGE_PORT", str(defaults.port))),
            db_path=Path(_env("SQLITE_DBPATH", str(defaults.db_path))),
            log_level=_env("STORAGE_LOG_LEVEL", defaults.log_level),
        )
