"""Configuration management for Demand Radar."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


@dataclass
class DatabaseConfig:
    """Database configuration."""
    path: str = "./demand_radar.db"
    timeout_seconds: float = 30.0
    batch_size: int = 50


@dataclass
class DedupConfig:
    """Deduplication configuration."""
    similarity_threshold: float = 0.92
    post_similarity_threshold: float = 0.9
    opportunity_check_threshold: float = 0.85
    max_passes: int = 5


@dataclass
class ClusteringConfig:
    """Clustering and trending configuration."""
    similarity_threshold: float = 0.75
    category_weight: float = 0.25
    recent_days: int = 7
    saturation_k: float = 0.3


@dataclass
class ReportConfig:
    """Cluster report configuration."""
    default_limit: int = 20
    max_limit: int = 100
    default_min_sources: int = 1
    top_posts: int = 5


@dataclass
class UsageConfig:
    """AI usage aggregation configuration."""
    daily_cost_alert: float = 5.0
    stats_days: int = 7


@dataclass
class UIConfig:
    """UI configuration."""
    host: str = "127.0.0.1"
    port: int = 8000
    debug: bool = False


@dataclass
class Config:
    """Main configuration container."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    report: ReportConfig = field(default_factory=ReportConfig)
    usage: UsageConfig = field(default_factory=UsageConfig)
    ui: UIConfig = field(default_factory=UIConfig)


def _dict_to_dataclass(data: dict[str, Any], cls: type) -> Any:
    """Convert a dictionary to a dataclass instance."""
    if not data:
        return cls()

    field_names = set(cls.__dataclass_fields__)

    kwargs = {}
    for key, value in data.items():
        if key in field_names:
            kwargs[key] = value

    return cls(**kwargs)


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file.

    Args:
        config_path: Path to config file. If None, loads default config.

    Returns:
        Config object with all settings.
    """
    if config_path is None:
        # Check for local config first, then default
        local_config = Path("config/local.yaml")
        default_config = Path("config/default.yaml")

        if local_config.exists():
            config_path = local_config
        elif default_config.exists():
            config_path = default_config
        else:
            config_path = None

    data: dict[str, Any] = {}
    if config_path is not None:
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}

    config = Config(
        database=_dict_to_dataclass(data.get("database", {}), DatabaseConfig),
        dedup=_dict_to_dataclass(data.get("dedup", {}), DedupConfig),
        clustering=_dict_to_dataclass(data.get("clustering", {}), ClusteringConfig),
        report=_dict_to_dataclass(data.get("report", {}), ReportConfig),
        usage=_dict_to_dataclass(data.get("usage", {}), UsageConfig),
        ui=_dict_to_dataclass(data.get("ui", {}), UIConfig),
    )

    # Environment override for the database location
    db_path = os.getenv("DEMAND_RADAR_DB_PATH")
    if db_path:
        config.database.path = db_path

    return config


def configure_logging(level: int = logging.INFO) -> None:
    """Configure logging for CLI and server runs."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


# Global config instance (lazy loaded)
_config: Config | None = None


def get_config() -> Config:
    """Get the global config instance."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config(config_path: str | Path | None = None) -> Config:
    """Reload configuration from file."""
    global _config
    _config = load_config(config_path)
    return _config
