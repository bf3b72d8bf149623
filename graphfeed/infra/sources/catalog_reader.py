from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum

from graphfeed.domain.exceptions import ConfigError
from graphfeed.domain.stream_name import STREAM_NAME_SEPARATOR, connection_prefix


class SyncMode(str, Enum):
    APPEND = "append"
    OVERWRITE = "overwrite"
    APPEND_DEDUP = "append_dedup"


@dataclass(frozen=True)
class CatalogStream:
    name: str
    sync_mode: SyncMode


@dataclass
class Catalog:
    """
    Назначение:
        Конфигурированный каталог потоков запуска.

    Инварианты/гарантии:
        - Каждый поток имеет sync_mode.
        - Порядок потоков сохраняется как в файле.
    """

    streams: list[CatalogStream] = field(default_factory=list)

    def names(self) -> set[str]:
        return {item.name for item in self.streams}

    def contains(self, stream: str) -> bool:
        return stream in self.names()

    def overwrite_streams(self) -> list[str]:
        return [item.name for item in self.streams if item.sync_mode is SyncMode.OVERWRITE]

    def derive_origin(self) -> str | None:
        """
        Алгоритм:
            - Берём префикс подключения у потоков вида <conn>__<origin>__<name>.
            - Ровно один кандидат -> он; ни одного -> None; несколько -> ConfigError.
        """
        candidates: set[str] = set()
        for item in self.streams:
            if item.name.count(STREAM_NAME_SEPARATOR) >= 2:
                candidates.add(connection_prefix(item.name))
        if not candidates:
            return None
        if len(candidates) > 1:
            raise ConfigError(
                "Could not determine revision origin from catalog: "
                f"found multiple connection prefixes {','.join(sorted(candidates))}"
            )
        return next(iter(candidates))


def parse_catalog(raw: object) -> Catalog:
    if not isinstance(raw, dict) or not isinstance(raw.get("streams"), list):
        raise ConfigError("Catalog must be an object with a 'streams' list")
    streams: list[CatalogStream] = []
    for idx, item in enumerate(raw["streams"]):
        stream = item.get("stream") if isinstance(item, dict) else None
        name = stream.get("name") if isinstance(stream, dict) else None
        if not isinstance(name, str) or not name:
            raise ConfigError(f"Catalog stream #{idx} has no name")
        mode = item.get("destination_sync_mode")
        if not mode:
            raise ConfigError(f"Undefined destination_sync_mode for stream {name}")
        try:
            sync_mode = SyncMode(str(mode).lower())
        except ValueError as exc:
            raise ConfigError(f"Unsupported destination_sync_mode {mode} for stream {name}") from exc
        streams.append(CatalogStream(name=name, sync_mode=sync_mode))
    return Catalog(streams=streams)


def load_catalog(path: str) -> Catalog:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except FileNotFoundError as exc:
        raise ConfigError(f"Catalog file not found: {path}") from exc
    except ValueError as exc:
        raise ConfigError(f"Catalog file is not valid JSON: {path}: {exc}") from exc
    return parse_catalog(raw)
