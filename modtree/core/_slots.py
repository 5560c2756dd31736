# 1st party
from __future__ import annotations
from dataclasses import dataclass
import logging
import typing as t

# 3rd party
import pydantic

# Local
from ._errors import CastError, KeyNotFoundError, MissingWriteCapabilityError

if t.TYPE_CHECKING:
    from ._module import Module

logger = logging.getLogger("modtree.module")


@dataclass(frozen=True)
class ParameterInfo:
    """Field marker that exposes an attribute under a different key.

    The attribute can still have its tensor contents updated in place but
    cannot be replaced wholesale::

        class Linear(Module):
            weight: Annotated[np.ndarray, ParameterInfo(key="w")]
    """

    key: str | None = None


@dataclass(frozen=True)
class ModuleInfo:
    """Field marker for attributes that may be replaced by ``update_modules``.

    Optionally exposes the attribute under a different key::

        class FeedForward(Module):
            w1: Annotated[Linear, ModuleInfo()]
            w2: Annotated[Linear, ModuleInfo(key="out")]
    """

    key: str | None = None


@dataclass(frozen=True)
class AttributeSlot:
    """A declared attribute of a module together with its current value."""

    name: str
    key: str
    value: t.Any
    replaceable: bool = False
    annotation: t.Any = None


def _find_marker(metadata: t.Iterable[t.Any]) -> ParameterInfo | ModuleInfo | None:
    for m in metadata:
        if isinstance(m, (ParameterInfo, ModuleInfo)):
            return m
    return None


def module_slots(module: Module) -> t.Iterator[AttributeSlot]:
    """Enumerate the declared attributes of ``module``.

    Model fields come first (pydantic already gathers the fields of every
    class between the concrete type and :class:`Module`), followed by private
    attributes declared below :class:`Module` that currently hold a value.
    The bookkeeping state of :class:`Module` itself is never reported.
    """
    from ._module import Module

    cls = type(module)
    for name, info in cls.model_fields.items():
        marker = _find_marker(info.metadata)
        key = marker.key if marker is not None and marker.key else name
        yield AttributeSlot(
            name=name,
            key=key,
            value=getattr(module, name),
            replaceable=isinstance(marker, ModuleInfo),
            annotation=info.annotation,
        )

    base_private = Module.__private_attributes__
    for name in cls.__private_attributes__:
        if name in base_private:
            continue
        try:
            value = getattr(module, name)
        except AttributeError:
            # declared without a default and never assigned
            continue
        yield AttributeSlot(name=name, key=name, value=value)


def find_slot(module: Module, key: str) -> AttributeSlot | None:
    for slot in module_slots(module):
        if slot.key == key:
            return slot
    return None


def write_slot(module: Module, key: str, value: t.Any) -> None:
    """Replace the attribute exposed as ``key`` with ``value``.

    Raises:
        KeyNotFoundError: no attribute is exposed under ``key``
        MissingWriteCapabilityError: the attribute is not declared with ModuleInfo
        CastError: ``value`` does not validate against the declared type
    """
    base = type(module).__name__
    slot = find_slot(module, key)
    if slot is None:
        raise KeyNotFoundError(base=base, key=key)
    if not slot.replaceable:
        raise MissingWriteCapabilityError(base=base, key=key)

    try:
        module.__pydantic_validator__.validate_assignment(
            module, slot.name, value, strict=True
        )
    except pydantic.ValidationError as e:
        raise CastError(
            f"Unable to set {base}.{key}: {type(value).__name__} does not "
            f"match the declared type {slot.annotation!r}",
            base=base,
            key=key,
        ) from e
    logger.debug("Replaced %s.%s with %s", base, key, type(value).__name__)
