"""Predicates and mappers for :meth:`Module.filter_map`.

Filters and leaf tests take ``(module, key, item)`` where ``key`` is the
dotted path of ``item`` relative to ``module``; mappers take the item and
return the mapped value or ``None`` to drop it.
"""

# 1st party
from __future__ import annotations
import typing as t

# Local
from ._nested import ItemKind, NestedItem
from ._value import ModuleValue, ValueKind

if t.TYPE_CHECKING:
    from ._module import Module

R = t.TypeVar("R")

ModuleItem = NestedItem[ModuleValue]
Filter = t.Callable[["Module", str, ModuleItem], bool]
LeafTest = t.Callable[["Module", str, ModuleItem], bool]
Mapper = t.Callable[[ModuleItem], t.Any]


def _value_kind(item: ModuleItem) -> ValueKind | None:
    if item.kind is ItemKind.VALUE:
        return item.unwrap().kind
    return None


def _is_structure(item: ModuleItem) -> bool:
    return item.kind in (ItemKind.ARRAY, ItemKind.DICTIONARY)


def filter_all(module: Module, key: str, item: ModuleItem) -> bool:
    return True


def filter_valid_child(module: Module, key: str, item: ModuleItem) -> bool:
    """Accept structure and sub-modules."""
    return _is_structure(item) or _value_kind(item) is ValueKind.MODULE


def filter_valid_parameters(module: Module, key: str, item: ModuleItem) -> bool:
    """Accept structure, tensors and sub-modules, so parameters of children are reached.

    Underscore-prefixed keys are rejected.
    """
    if key.startswith("_"):
        return False
    return _is_structure(item) or _value_kind(item) in (
        ValueKind.PARAMETERS,
        ValueKind.MODULE,
    )


def filter_local_parameters(module: Module, key: str, item: ModuleItem) -> bool:
    """Like :func:`filter_valid_parameters` without recursing into sub-modules."""
    if key.startswith("_"):
        return False
    return _is_structure(item) or _value_kind(item) is ValueKind.PARAMETERS


def filter_trainable_parameters(module: Module, key: str, item: ModuleItem) -> bool:
    """Like :func:`filter_valid_parameters` but rejects keys frozen on ``module``."""
    return filter_valid_parameters(module, key, item) and key not in module.no_grad


def filter_other(module: Module, key: str, item: ModuleItem) -> bool:
    return _value_kind(item) is ValueKind.OTHER


def map_parameters(map: t.Callable[[t.Any], R | None] | None = None) -> t.Callable[[ModuleItem], R | None]:
    """Lift a tensor function into a mapper; other items map to ``None``.

    >>> shapes = module.filter_map(filter_local_parameters, map_parameters(lambda w: w.shape))
    """

    def apply(item: ModuleItem):
        if _value_kind(item) is not ValueKind.PARAMETERS:
            return None
        value = item.unwrap().value
        return value if map is None else map(value)

    return apply


def map_module(map: t.Callable[[Module], R | None] | None = None) -> t.Callable[[ModuleItem], R | None]:

    def apply(item: ModuleItem):
        if _value_kind(item) is not ValueKind.MODULE:
            return None
        value = item.unwrap().value
        return value if map is None else map(value)

    return apply


def map_other(map: t.Callable[[t.Any], R | None] | None = None) -> t.Callable[[ModuleItem], R | None]:

    def apply(item: ModuleItem):
        if _value_kind(item) is not ValueKind.OTHER:
            return None
        value = item.unwrap().value
        return value if map is None else map(value)

    return apply


def is_leaf_default(module: Module, key: str, item: ModuleItem) -> bool:
    """Tensors and opaque values are leaves; structure and sub-modules are traversed."""
    return _value_kind(item) in (ValueKind.PARAMETERS, ValueKind.OTHER)


def is_leaf_module(module: Module, key: str, item: ModuleItem) -> bool:
    return _value_kind(item) is ValueKind.MODULE


def is_leaf_module_no_children(module: Module, key: str, item: ModuleItem) -> bool:
    """Stop at sub-modules that have no children of their own."""
    if _value_kind(item) is not ValueKind.MODULE:
        return False
    return len(item.unwrap().value.children()) == 0
