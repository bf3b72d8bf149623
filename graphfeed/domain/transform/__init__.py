from .context import ContextView, CorrelationContext
from .registry import FallbackMode, TransformFactory, TransformRegistry, build_registry
from .unit import BaseTransformUnit, ConvertedItem, TransformUnit, normalize_entries

__all__ = [
    "ContextView",
    "CorrelationContext",
    "FallbackMode",
    "TransformFactory",
    "TransformRegistry",
    "build_registry",
    "BaseTransformUnit",
    "ConvertedItem",
    "TransformUnit",
    "normalize_entries",
]
