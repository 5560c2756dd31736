# 1st party
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum, auto
import typing as t

# Local
from ._nested import ItemKind, NestedItem
from ._tensor import is_tensor

if t.TYPE_CHECKING:
    from ._module import Module


class ValueKind(Enum):

    PARAMETERS = auto()
    MODULE = auto()
    OTHER = auto()


@dataclass(frozen=True, eq=False)
class ModuleValue:
    """A single attribute value of a module.

    ``PARAMETERS`` holds a tensor, ``MODULE`` a sub-module and ``OTHER`` any
    remaining value (scalars, strings, callables, lists of plain values...).
    The sub-module is shared with the live tree, not copied.
    """

    kind: ValueKind
    value: t.Any

    @classmethod
    def parameters(cls, value) -> ModuleValue:
        return cls(ValueKind.PARAMETERS, value)

    @classmethod
    def module(cls, value: Module) -> ModuleValue:
        return cls(ValueKind.MODULE, value)

    @classmethod
    def other(cls, value: t.Any) -> ModuleValue:
        return cls(ValueKind.OTHER, value)

    @property
    def is_parameters(self) -> bool:
        return self.kind is ValueKind.PARAMETERS

    @property
    def is_module(self) -> bool:
        return self.kind is ValueKind.MODULE

    @property
    def is_other(self) -> bool:
        return self.kind is ValueKind.OTHER

    def __eq__(self, other):
        if not isinstance(other, ModuleValue):
            return NotImplemented
        return self.kind is other.kind and self.value is other.value

    __hash__ = None

    @classmethod
    def build(cls, value: t.Any) -> NestedItem[ModuleValue]:
        """Classify a runtime attribute value into a nested item."""
        from ._module import Module

        if is_tensor(value):
            return NestedItem.value(cls.parameters(value))
        if isinstance(value, Module):
            return NestedItem.value(cls.module(value))
        if isinstance(value, (list, tuple)) and (not value or _holds_structure(value)):
            return NestedItem(ItemKind.ARRAY, [cls.build(v) for v in value])
        if (
            isinstance(value, dict)
            and all(isinstance(k, str) for k in value)
            and (not value or _holds_structure(value.values()))
        ):
            return NestedItem(
                ItemKind.DICTIONARY, {k: cls.build(v) for k, v in value.items()}
            )
        return NestedItem.value(cls.other(value))


def _holds_structure(values: t.Iterable[t.Any]) -> bool:
    # true when some entry, at any depth, is a tensor or a module
    from ._module import Module

    for v in values:
        if is_tensor(v) or isinstance(v, Module):
            return True
        if isinstance(v, (list, tuple)) and _holds_structure(v):
            return True
        if isinstance(v, dict) and _holds_structure(v.values()):
            return True
    return False
