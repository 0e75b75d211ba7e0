"""
Configuration

Settings are resolved in three layers:
1. Defaults below
2. Optional YAML file (path argument, or TASKHUB_CONFIG)
3. Environment variable overrides (TASKHUB_*)
"""

import logging
import os
from dataclasses import dataclass, field, fields
from datetime import timezone, tzinfo
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
from zoneinfo import ZoneInfo

import yaml

logger = logging.getLogger("config")

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
DEFAULT_STORE_FILE = "data/taskhub/tasks.json"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Environment variable -> settings key
ENV_OVERRIDES: Dict[str, str] = {
    "TASKHUB_STORE_FILE": "store_file",
    "TASKHUB_APPROVER_IDS": "approver_ids",
    "TASKHUB_EVIDENCE_TAG": "approval_evidence_tag",
    "TASKHUB_REQUIRE_ATTACHMENT": "require_attachment_on_submit",
    "TASKHUB_TIMEZONE": "timezone",
    "TASKHUB_LOG_LEVEL": "log_level",
}


@dataclass
class Settings:
    """Runtime settings for the engine, store and admin surfaces."""
    store_file: Path = Path(DEFAULT_STORE_FILE)
    # Actors allowed to approve/reject; empty means every actor may
    approver_ids: List[str] = field(default_factory=list)
    approval_evidence_tag: str = "approval"
    require_attachment_on_submit: bool = False
    # Timezone in which recurrence times of day are interpreted
    timezone: str = "UTC"
    log_level: str = "INFO"

    @property
    def tz(self) -> tzinfo:
        if self.timezone.upper() == "UTC":
            return timezone.utc
        return ZoneInfo(self.timezone)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "store_file": str(self.store_file),
            "approver_ids": list(self.approver_ids),
            "approval_evidence_tag": self.approval_evidence_tag,
            "require_attachment_on_submit": self.require_attachment_on_submit,
            "timezone": self.timezone,
            "log_level": self.log_level,
        }


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _coerce(key: str, value: Any) -> Any:
    if key == "store_file":
        return Path(value)
    if key == "approver_ids":
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        return [str(v) for v in value or []]
    if key == "require_attachment_on_submit":
        return _parse_bool(value)
    return str(value)


def read_yaml_file(file_path: Path) -> Dict[str, Any]:
    """Read a YAML mapping; a missing or empty file yields {}."""
    if not file_path.exists():
        return {}
    with open(file_path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {file_path} must contain a mapping, got {type(data).__name__}")
    return data


def load_settings(
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Resolve settings from defaults, YAML file and environment."""
    environ = os.environ if environ is None else environ
    known = {f.name for f in fields(Settings)}
    values: Dict[str, Any] = {}

    config_path = path or (Path(environ["TASKHUB_CONFIG"]) if environ.get("TASKHUB_CONFIG") else None)
    if config_path is not None:
        for key, value in read_yaml_file(Path(config_path)).items():
            if key not in known:
                logger.warning(f"Ignoring unknown config key '{key}' in {config_path}")
                continue
            values[key] = _coerce(key, value)

    for env_name, key in ENV_OVERRIDES.items():
        if env_name in environ:
            values[key] = _coerce(key, environ[env_name])

    return Settings(**values)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
