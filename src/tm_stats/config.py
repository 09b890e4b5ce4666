"""Configuration loading utilities for tm-stats."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping, Optional


class ConfigError(Exception):
    """Raised when configuration loading fails."""


def _load_toml_bytes(data: bytes) -> Mapping[str, Any]:
    try:
        import tomllib  # type: ignore[attr-defined]
    except ModuleNotFoundError:  # pragma: no cover - Python < 3.11
        try:
            import tomli as tomllib  # type: ignore[import-not-found]
        except ModuleNotFoundError as exc:  # pragma: no cover - depends on environment
            raise ConfigError(
                "TOML configuration requires Python 3.11+ or the 'tomli' package."
            ) from exc
    return tomllib.loads(data.decode("utf-8"))


def load_ingest_config(path: Path) -> Mapping[str, Any]:
    """Load ingest configuration from a TOML file.

    Returns a mapping with ``ingest`` (validated values, absent keys
    omitted), ``auth`` and the untouched ``raw`` document.
    """

    try:
        data = path.read_bytes()
    except OSError as exc:
        raise ConfigError(f"Failed to read config file: {path}") from exc

    try:
        raw = dict(_load_toml_bytes(data))
    except Exception as exc:
        raise ConfigError(f"Failed to parse TOML config: {path}") from exc

    ingest = raw.get("ingest")
    if not isinstance(ingest, Mapping):
        raise ConfigError("Config file must contain an [ingest] table.")

    auth = raw.get("auth", {})
    if auth is None:
        auth = {}
    if not isinstance(auth, Mapping):
        raise ConfigError("[auth] must be a table when present.")

    def _as_str(value: Any, field: str) -> Optional[str]:
        if value is None:
            return None
        if not isinstance(value, str) or not value:
            raise ConfigError(f"{field} must be a non-empty string.")
        return value

    def _as_positive_number(value: Any, field: str) -> Optional[float]:
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"{field} must be a number.")
        if value < 0:
            raise ConfigError(f"{field} must not be negative.")
        return float(value)

    validated = {
        "db_path": _as_str(ingest.get("db_path"), "ingest.db_path"),
        "blob_root": _as_str(ingest.get("blob_root"), "ingest.blob_root"),
        "blob_url": _as_str(ingest.get("blob_url"), "ingest.blob_url"),
        "parquet_dir": _as_str(ingest.get("parquet_dir"), "ingest.parquet_dir"),
        "freshness_minutes": _as_positive_number(
            ingest.get("freshness_minutes"), "ingest.freshness_minutes"
        ),
        "min_interval": _as_positive_number(
            ingest.get("min_interval"), "ingest.min_interval"
        ),
    }
    if validated["blob_root"] and validated["blob_url"]:
        raise ConfigError("Set only one of ingest.blob_root and ingest.blob_url.")

    max_retries = ingest.get("max_retries")
    if max_retries is not None and (
        isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 0
    ):
        raise ConfigError("ingest.max_retries must be a non-negative integer.")
    validated["max_retries"] = max_retries

    api_key_env = _as_str(auth.get("api_key_env"), "auth.api_key_env")

    return {
        "raw": raw,
        "ingest": {key: value for key, value in validated.items() if value is not None},
        "auth": {
            "api_key_env": api_key_env,
        },
    }


__all__ = ["ConfigError", "load_ingest_config"]
