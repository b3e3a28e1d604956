from __future__ import annotations

import importlib
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Dict, List, Optional, Type

from pydantic import BaseModel, Field, create_model

from .errors import DefinitionNotFoundError, InvalidInputError
from .scheduler import ScheduleConfig


@dataclass(frozen=True)
class ExtractorDefinition:
    """
    One extraction task: the shape of each item plus how to prompt for it.

    Definitions are read-only and can be shared across concurrent runs.
    ``schedule`` overrides the orchestrator's default call spacing.
    """

    name: str
    output_schema: Type[BaseModel]
    build_prompt: Callable[[str], str]
    description: str = ""
    version: str = "1"
    schedule: Optional[ScheduleConfig] = None

    def __post_init__(self) -> None:
        if not self.name:
            raise InvalidInputError("Extractor name must be non-empty", field="name")
        if not (isinstance(self.output_schema, type) and issubclass(self.output_schema, BaseModel)):
            raise InvalidInputError(
                f"Extractor {self.name!r} output_schema must be a pydantic model class",
                field="output_schema",
            )
        if not callable(self.build_prompt):
            raise InvalidInputError(
                f"Extractor {self.name!r} build_prompt must be callable", field="build_prompt"
            )


@lru_cache(maxsize=None)
def _batch_model(output_schema: Type[BaseModel]) -> Type[BaseModel]:
    return create_model(
        f"{output_schema.__name__}Batch",
        items=(List[output_schema], Field(..., description="List of extracted items")),  # type: ignore[valid-type]
    )


def build_batch_model(definition: ExtractorDefinition) -> Type[BaseModel]:
    """Wrap the definition's item schema as ``{items: list[item]}`` for the model output."""
    return _batch_model(definition.output_schema)


_REGISTRY: Dict[str, ExtractorDefinition] = {}


def register_extractor(definition: ExtractorDefinition, *, replace: bool = False) -> ExtractorDefinition:
    if definition.name in _REGISTRY and not replace:
        raise InvalidInputError(f"Extractor {definition.name!r} is already registered", field="name")
    _REGISTRY[definition.name] = definition
    return definition


def unregister_extractor(name: str) -> None:
    _REGISTRY.pop(name, None)


def extractor_names() -> List[str]:
    return sorted(_REGISTRY)


def get_extractor(name: str) -> ExtractorDefinition:
    try:
        return _REGISTRY[name]
    except KeyError:
        raise DefinitionNotFoundError(name, extractor_names()) from None


def load_extractor(reference: str) -> ExtractorDefinition:
    """
    Resolve a registered extractor name or a ``package.module:attribute`` path.
    """
    if reference in _REGISTRY or ":" not in reference:
        return get_extractor(reference)

    module_name, _, attribute = reference.partition(":")
    try:
        module = importlib.import_module(module_name)
        definition = getattr(module, attribute)
    except (ImportError, AttributeError, ValueError):
        raise DefinitionNotFoundError(reference, extractor_names()) from None
    if not isinstance(definition, ExtractorDefinition):
        raise DefinitionNotFoundError(reference, extractor_names())
    return definition
