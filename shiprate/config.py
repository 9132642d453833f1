"""YAML configuration loader with env var resolution and Pydantic validation.

Loads config from (priority order):
1. SHIPRATE_CONFIG_PATH
2. ./shiprate.yaml (working directory)

Environment variables override YAML: SHIPRATE_<SECTION>_<KEY>, e.g.
SHIPRATE_ENGINE_CONCURRENCY=10. ${VAR} references in YAML values resolve
from environment at load time. With no file, defaults apply.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from shiprate.errors import RateShopError

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")
_ENV_PREFIX = "SHIPRATE_"


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class EngineConfig(BaseModel):
    """Pipeline concurrency and persistence tuning."""

    concurrency: int = Field(default=5, ge=1, le=100)
    persist_batch_size: int = Field(default=50, ge=1)
    persist_batch_timeout_seconds: float = Field(default=30.0, gt=0)
    max_flush_failures: int = Field(default=3, ge=1)


class CarrierConfig(BaseModel):
    """Remote carrier API endpoints and request policy."""

    request_timeout_seconds: float = Field(default=20.0, ge=1, le=30)
    max_attempts: int = Field(default=2, ge=1, le=5)
    retry_backoff_seconds: float = Field(default=1.0, ge=0)
    ups_base_url: str = "https://onlinetools.ups.com"
    ups_sandbox_base_url: str = "https://wwwcie.ups.com"
    fedex_base_url: str = "https://apis.fedex.com"
    fedex_sandbox_base_url: str = "https://apis-sandbox.fedex.com"


class ApiConfig(BaseModel):
    """HTTP surface settings."""

    cors_allow_origins: list[str] = ["*"]
    progress_poll_seconds: float = Field(default=1.0, gt=0)


class ShipRateConfig(BaseModel):
    """Top-level configuration."""

    engine: EngineConfig = EngineConfig()
    carriers: CarrierConfig = CarrierConfig()
    api: ApiConfig = ApiConfig()


def _find_config_file() -> Path | None:
    for candidate in (Path.cwd() / "shiprate.yaml", Path.cwd() / "shiprate.yml"):
        if candidate.exists():
            return candidate
    return None


def _coerce(value: str) -> Any:
    """Coerce an env string to int, float, bool or comma list where it looks like one."""
    lowered = value.strip().lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    if "," in value:
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply SHIPRATE_<SECTION>_<KEY> env var overrides to config data.

    Args:
        data: Parsed YAML config dict.

    Returns:
        Config dict with env var overrides applied.
    """
    sections = sorted(ShipRateConfig.model_fields.keys(), key=len, reverse=True)
    for key, value in os.environ.items():
        if not key.startswith(_ENV_PREFIX):
            continue
        suffix = key[len(_ENV_PREFIX):].lower()
        for section in sections:
            if not suffix.startswith(section + "_"):
                continue
            field_name = suffix[len(section) + 1:]
            section_model = ShipRateConfig.model_fields[section].annotation
            if field_name not in section_model.model_fields:
                break
            section_data = data.setdefault(section, {})
            if isinstance(section_data, dict):
                coerced = _coerce(value)
                if field_name == "cors_allow_origins" and isinstance(coerced, str):
                    coerced = [coerced]
                section_data[field_name] = coerced
            break
    return data


def load_config(config_path: str | None = None) -> ShipRateConfig:
    """Load configuration from YAML (if any) plus environment overrides.

    Args:
        config_path: Explicit path to a config file. Defaults to
            SHIPRATE_CONFIG_PATH, then ./shiprate.yaml.

    Returns:
        Validated ShipRateConfig.

    Raises:
        FileNotFoundError: If an explicit config path does not exist.
        RateShopError: E-4005 if the YAML or the resulting values are invalid.
    """
    config_path = config_path or os.environ.get("SHIPRATE_CONFIG_PATH") or None
    if config_path:
        path: Path | None = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = _find_config_file()

    raw_data: dict[str, Any] = {}
    if path is not None:
        logger.info("Loading config from %s", path)
        try:
            with open(path) as f:
                raw_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RateShopError.from_code("E-4005", path=str(path), reason=str(e)) from e
        if not isinstance(raw_data, dict):
            raise RateShopError.from_code(
                "E-4005", path=str(path), reason="top level must be a mapping"
            )

    data = _resolve_env_vars_recursive(raw_data)
    data = _apply_env_overrides(data)
    try:
        return ShipRateConfig(**data)
    except PydanticValidationError as e:
        raise RateShopError.from_code(
            "E-4005",
            path=str(path) if path else "(environment)",
            reason=f"{e.error_count()} invalid value(s)",
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e
