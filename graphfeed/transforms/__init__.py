from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

from graphfeed.domain.stream_name import StreamName
from graphfeed.domain.transform import TransformFactory, TransformUnit
from graphfeed.transforms.example import ORGS_STREAM, REPOS_STREAM, OrgsTransform, ReposTransform
from graphfeed.transforms.passthrough import PassthroughTransform

PASSTHROUGH_TARGET_PREFIX = "passthrough:"

# Явная таблица встроенных трансформеров; заполняется только здесь.
BUILTIN_TRANSFORMS: Mapping[str, TransformFactory] = MappingProxyType(
    {
        ORGS_STREAM.as_string: OrgsTransform,
        REPOS_STREAM.as_string: ReposTransform,
    }
)


def build_override(target: str) -> TransformUnit:
    """
    Назначение:
        Трансформер для явного переопределения потока.

    Контракт:
        - "<origin>__<name>" встроенного трансформера -> его новый экземпляр.
        - "passthrough:<type>" -> PassthroughTransform(<type>).
        - Иначе ValueError.
    """
    if target.startswith(PASSTHROUGH_TARGET_PREFIX):
        return PassthroughTransform(target[len(PASSTHROUGH_TARGET_PREFIX):].strip())
    factory = BUILTIN_TRANSFORMS.get(StreamName.from_string(target).as_string)
    if factory is None:
        known = ",".join(sorted(BUILTIN_TRANSFORMS))
        raise ValueError(
            f"Unknown transform {target}. Possible values are {known} or {PASSTHROUGH_TARGET_PREFIX}<type>"
        )
    return factory()


__all__ = ["BUILTIN_TRANSFORMS", "PASSTHROUGH_TARGET_PREFIX", "PassthroughTransform", "build_override"]
