from __future__ import annotations
import os, json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict

from fleetops.runtime import env_path

def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name, str(default)).strip().lower()
    return v in ("1", "true", "yes", "y", "on")

def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        return float(default)

def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return int(default)

DEFAULT_DATABASE_URL = "sqlite:///./fleetops.db"
SQL_ECHO = _env_bool("SQL_ECHO", False)

# Stops a single driver may hold before new work is refused
DEFAULT_MAX_STOPS_PER_DRIVER = 50


@dataclass(frozen=True)
class ReassignmentSettings:
    max_stops_per_driver: int = DEFAULT_MAX_STOPS_PER_DRIVER
    capacity_warning_pct: float = 90.0
    license_warning_days: int = 30
    average_speed_kmh: float = 40.0
    default_candidate_limit: int = 10
    default_option_limit: int = 5
    database_url: str = DEFAULT_DATABASE_URL

    def as_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out.pop("database_url", None)
        return out


def dataset_dir() -> Path:
    base = env_path("PRIVATE_DATA_DIR", "./data/private")
    d = base / "active"
    return d if d.exists() else base

def _load_json(path: Path, default: Any) -> Any:
    try:
        if path.exists():
            return json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        pass
    return default

def load_settings() -> ReassignmentSettings:
    """
    Environment first, then reassignment_settings.json from the dataset dir
    (file values win). Unknown keys in the file are ignored.
    """
    values: Dict[str, Any] = {
        "max_stops_per_driver": _env_int("MAX_STOPS_PER_DRIVER", DEFAULT_MAX_STOPS_PER_DRIVER),
        "capacity_warning_pct": _env_float("CAPACITY_WARNING_PCT", 90.0),
        "license_warning_days": _env_int("LICENSE_WARNING_DAYS", 30),
        "average_speed_kmh": _env_float("AVERAGE_SPEED_KMH", 40.0),
        "default_candidate_limit": _env_int("DEFAULT_CANDIDATE_LIMIT", 10),
        "default_option_limit": _env_int("DEFAULT_OPTION_LIMIT", 5),
        "database_url": os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
    }
    overrides = _load_json(dataset_dir() / "reassignment_settings.json", {})
    if isinstance(overrides, dict):
        for key, raw in overrides.items():
            if key not in values or key == "database_url":
                continue
            try:
                values[key] = type(values[key])(raw)
            except (TypeError, ValueError):
                continue
    return ReassignmentSettings(**values)
