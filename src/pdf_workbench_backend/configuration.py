from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

_HERE = Path(__file__).resolve()
_CANDIDATE_CONFIG_PATHS = [parent / "config/config.yaml" for parent in _HERE.parents[:5]]

CONFIG_PATH = next((path for path in _CANDIDATE_CONFIG_PATHS if path.exists()), None)

STORAGE_BACKENDS = ["local", "s3"]
DATABASE_BACKENDS = ["memory", "sqlite"]


@dataclass
class StorageConfig:
    backend: str = "local"
    upload_dir: str = "uploads"
    s3_bucket: str = ""
    s3_prefix: str = "uploads/"


@dataclass
class DatabaseConfig:
    backend: str = "memory"
    path: str = "data/pdf_workbench.db"


@dataclass
class WorkerConfig:
    max_workers: int = 2


@dataclass
class UploadConfig:
    max_files: int = 5
    max_file_size: int = 10 * 1024 * 1024
    allowed_mimetypes: List[str] = field(default_factory=lambda: ["application/pdf"])


@dataclass
class RenderConfig:
    dpi: int = 144


@dataclass
class AppConfig:
    log_level: str = "INFO"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    storage: StorageConfig = field(default_factory=StorageConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    workers: WorkerConfig = field(default_factory=WorkerConfig)
    upload: UploadConfig = field(default_factory=UploadConfig)
    render: RenderConfig = field(default_factory=RenderConfig)


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> DictConfig:
    """
    Build the runtime configuration.

    Layers, lowest precedence first: the AppConfig defaults, the YAML file
    (``config/config.yaml`` next to the checkout unless ``config_path`` is
    given), then ``overrides``. Environment variables from a ``.env`` file
    are loaded first so ``${oc.env:...}`` interpolations in the YAML see them.
    """
    load_dotenv()

    merged = OmegaConf.structured(AppConfig)
    path = config_path or CONFIG_PATH
    if path is not None:
        if not path.exists():
            raise FileNotFoundError(f"Config file not found at {path}")
        merged = OmegaConf.merge(merged, OmegaConf.load(path))
    if overrides:
        merged = OmegaConf.merge(merged, OmegaConf.create(overrides))

    # resolve env interpolations once so later reads are stable
    OmegaConf.resolve(merged)
    _validate(merged)
    return merged


def _validate(config: DictConfig) -> None:
    if config.storage.backend not in STORAGE_BACKENDS:
        raise ValueError(f"Unknown storage backend '{config.storage.backend}'. Choose from: {STORAGE_BACKENDS}")
    if config.database.backend not in DATABASE_BACKENDS:
        raise ValueError(f"Unknown database backend '{config.database.backend}'. Choose from: {DATABASE_BACKENDS}")
    if config.storage.backend == "s3" and not config.storage.s3_bucket:
        raise ValueError("storage.s3_bucket is required when storage.backend is 's3'")
    if config.workers.max_workers < 1:
        raise ValueError("workers.max_workers must be at least 1")
