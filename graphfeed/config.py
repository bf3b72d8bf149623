from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
import os
import yaml

from graphfeed.domain.policy import InvalidRecordStrategy
from graphfeed.domain.transform.registry import FallbackMode
from graphfeed.infra.logging.setup import map_log_level

ENV_PREFIX = "GRAPHFEED_"


@dataclass(frozen=True)
class Settings:
    # API
    api_url: str | None = None
    api_key: str | None = None
    graph: str = "default"
    expiration: str | None = None
    revision_origin: str | None = None
    timeout_seconds: float = 20.0
    retries: int = 3
    retry_backoff_seconds: float = 0.5
    tls_skip_verify: bool = False
    ca_file: str | None = None

    # Pipeline
    batch_size: int = 500
    invalid_record_strategy: str = InvalidRecordStrategy.SKIP.value
    dry_run: bool = False
    defer_dependents: bool = True
    fallback_type: str | None = None
    fallback_mode: str = FallbackMode.FALLBACK.value
    transform_overrides: dict[str, str] = field(default_factory=dict)

    # Paths / logging
    log_dir: str = "./logs"
    report_dir: str = "./reports"
    log_level: str = "INFO"
    log_json: bool = False
    report_items_limit: int = 200


@dataclass(frozen=True)
class LoadedSettings:
    settings: Settings
    sources_used: list[str]


_INT_FIELDS = {"retries", "batch_size", "report_items_limit"}
_FLOAT_FIELDS = {"timeout_seconds", "retry_backoff_seconds"}
_BOOL_FIELDS = {"tls_skip_verify", "dry_run", "defer_dependents", "log_json"}
_MAP_FIELDS = {"transform_overrides"}


def _read_yaml_config(path: Path) -> dict:
    if not path.exists():
        return {}
    if not path.is_file():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            return {}
        return data


def _env_get(name: str) -> str | None:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return None
    return v.strip()


def parse_bool(v: str | bool | None) -> bool | None:
    if v is None or isinstance(v, bool):
        return v
    vv = str(v).lower()
    if vv in ("1", "true", "yes", "y"):
        return True
    if vv in ("0", "false", "no", "n"):
        return False
    raise ValueError(f"Invalid boolean value: {v}")


def parse_mapping(v) -> dict[str, str]:
    """
    Назначение:
        Пары поток -> трансформер: dict из YAML, "a=b,c=d" из ENV
        или список "a=b" из повторяемой опции CLI.
    """
    if isinstance(v, dict):
        items = [(str(k), str(val)) for k, val in v.items()]
    else:
        raw = v.split(",") if isinstance(v, str) else list(v)
        items = []
        for pair in raw:
            pair = str(pair).strip()
            if not pair:
                continue
            key, sep, val = pair.partition("=")
            if not sep:
                raise ValueError(f"Invalid mapping item {pair!r}, expected STREAM=TARGET")
            items.append((key, val))
    res: dict[str, str] = {}
    for key, val in items:
        key, val = key.strip(), val.strip()
        if not key or not val:
            raise ValueError(f"Invalid mapping item {key}={val}, expected STREAM=TARGET")
        res[key] = val
    return res


def _coerce(name: str, value):
    if value is None:
        return None
    if name in _BOOL_FIELDS:
        return parse_bool(value)
    if name in _INT_FIELDS:
        return int(value)
    if name in _FLOAT_FIELDS:
        return float(value)
    if name in _MAP_FIELDS:
        return parse_mapping(value)
    return value


def _validate(settings: Settings) -> Settings:
    strategy = InvalidRecordStrategy.parse(settings.invalid_record_strategy)
    mode = FallbackMode.parse(settings.fallback_mode)
    map_log_level(settings.log_level)
    if settings.batch_size <= 0:
        raise ValueError(f"batch_size must be positive, got {settings.batch_size}")
    if settings.retries < 0:
        raise ValueError(f"retries must be >= 0, got {settings.retries}")
    return Settings(
        **{
            **{f.name: getattr(settings, f.name) for f in fields(Settings)},
            "invalid_record_strategy": strategy.value,
            "fallback_mode": mode.value,
            "log_level": settings.log_level.strip().upper(),
            "transform_overrides": dict(settings.transform_overrides or {}),
        }
    )


def load_settings(
    config_path: str | None,
    cli_overrides: dict,
) -> LoadedSettings:
    """
    Priority: CLI > ENV > config > defaults

    ENV: GRAPHFEED_<FIELD> (например GRAPHFEED_API_URL, GRAPHFEED_DRY_RUN).
    transform_overrides: STREAM=TARGET (dict в YAML, "a=b,c=d" в ENV, --transform в CLI).
    Невалидные значения (стратегия, режим fallback, уровень логов, bool/int, пары) -> ValueError.
    """
    sources: list[str] = []
    defaults = Settings()
    names = [f.name for f in fields(Settings)]

    # 1) config file
    cfg: dict = {}
    if config_path:
        cfg = _read_yaml_config(Path(config_path))
        if cfg:
            sources.append("config")

    # 2) env
    env = {name: _env_get(f"{ENV_PREFIX}{name.upper()}") for name in names}
    if any(v is not None for v in env.values()):
        sources.append("env")

    # merge config -> env -> cli
    merged = {name: _coerce(name, cfg.get(name, getattr(defaults, name))) for name in names}

    for name, value in env.items():
        if value is not None:
            merged[name] = _coerce(name, value)

    # 3) apply CLI overrides (only those explicitly passed)
    if any(v is not None for v in cli_overrides.values()):
        sources.append("cli")

    for k, v in cli_overrides.items():
        if v is None or k not in merged:
            continue
        merged[k] = _coerce(k, v)

    settings = _validate(Settings(**merged))
    return LoadedSettings(settings=settings, sources_used=sources)
