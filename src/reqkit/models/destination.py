"""Writes a decoded JSON body into the caller's destination.

A destination is either a value populated in place (pydantic model instance,
dataclass instance, dict, list) or a type such as ``Item`` or ``list[Item]``,
in which case a new value is decoded and returned.
"""
import dataclasses
import typing
from functools import lru_cache
from typing import Any, TypeVar

from pydantic import BaseModel, TypeAdapter

T = TypeVar("T")


def is_type_target(destination: Any) -> bool:
    return isinstance(destination, type) or typing.get_origin(destination) is not None


def check_destination(destination: Any) -> None:
    if is_type_target(destination):
        return
    if isinstance(destination, (BaseModel, dict, list)):
        return
    if dataclasses.is_dataclass(destination):
        return
    raise TypeError(
        f"destination must be a model, dataclass, dict, list or a type, "
        f"got {type(destination).__name__}"
    )


@lru_cache(maxsize=256)
def _adapter(target) -> TypeAdapter:
    return TypeAdapter(target)


def _adapter_for(target) -> TypeAdapter:
    try:
        return _adapter(target)
    except TypeError:
        # unhashable typing forms
        return TypeAdapter(target)


def decode_into(content: bytes, destination: T) -> T:
    """Validate ``content`` as JSON for the destination's type and store it.

    Validation is strict, like a typed JSON decoder: ``"7"`` does not become
    ``7``. Raises pydantic's ``ValidationError`` for malformed JSON and for
    JSON that does not fit the destination type.
    """
    check_destination(destination)

    if is_type_target(destination):
        return _adapter_for(destination).validate_json(content, strict=True)

    if isinstance(destination, BaseModel):
        value = type(destination).model_validate_json(content, strict=True)
        _copy_model(value, destination)
        return destination

    if isinstance(destination, dict):
        value = _adapter_for(dict[str, Any]).validate_json(content, strict=True)
        destination.clear()
        destination.update(value)
        return destination

    if isinstance(destination, list):
        value = _adapter_for(list[Any]).validate_json(content, strict=True)
        destination[:] = value
        return destination

    value = _adapter_for(type(destination)).validate_json(content, strict=True)
    for field in dataclasses.fields(destination):
        object.__setattr__(destination, field.name, getattr(value, field.name))
    return destination


def _copy_model(source: BaseModel, target: BaseModel) -> None:
    # object.__setattr__ skips assignment validation and works on frozen models
    for name, value in source.__dict__.items():
        object.__setattr__(target, name, value)
    object.__setattr__(target, "__pydantic_fields_set__", set(source.model_fields_set))
    object.__setattr__(target, "__pydantic_extra__", source.__pydantic_extra__)
