"""Runtime configuration for the tracker backend."""
from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("configs") / "tracker.yaml"


@dataclass
class TrackerConfig:
    db_path: Path = Path("data") / "echo_tracker.db"
    default_window_days: int = 7
    page_stats_window_days: int = 30
    retention_days: int = 14
    top_domains_limit: int = 10
    top_pages_limit: int = 10
    heatmap_top_urls: int = 5
    recent_activity_limit: int = 20
    default_page_limit: int = 20
    max_page_limit: int = 100
    uncategorized_label: str = "Uncategorized"
    uncategorized_color: str = "#6b7280"
    default_source_type: str = "extension"
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"
    json_logs: bool = False


def load_yaml_config(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


TRUE_STRINGS = {"true", "yes", "on", "1"}
FALSE_STRINGS = {"false", "no", "off", "0", ""}


def _as_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in TRUE_STRINGS:
            return True
        if lowered in FALSE_STRINGS:
            return False
    raise ValueError(f"Config key {key} expects a boolean, got {value!r}")


def config_from_mapping(values: Dict[str, Any]) -> TrackerConfig:
    """Build a config from a plain mapping, coercing to the declared field types."""
    cfg = TrackerConfig()
    known = {f.name: f for f in fields(TrackerConfig)}
    for key, value in values.items():
        if key not in known:
            LOGGER.warning("Ignoring unknown config key %s", key)
            continue
        if value is None:
            continue
        current = getattr(cfg, key)
        if isinstance(current, bool):
            setattr(cfg, key, _as_bool(key, value))
        elif isinstance(current, int):
            setattr(cfg, key, int(value))
        elif isinstance(current, Path):
            setattr(cfg, key, Path(value))
        else:
            setattr(cfg, key, str(value))
    return cfg


def load_config(path: Optional[Path] = None) -> TrackerConfig:
    return config_from_mapping(load_yaml_config(path or DEFAULT_CONFIG_PATH))
