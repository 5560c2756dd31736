# 1st party
from __future__ import annotations
from collections.abc import Mapping
from enum import Enum, auto
import typing as t

# 3rd party
import numpy as np

T = t.TypeVar("T")
R = t.TypeVar("R")


class ItemKind(Enum):

    VALUE = auto()
    DICTIONARY = auto()
    ARRAY = auto()
    NONE = auto()


def _values_equal(a: t.Any, b: t.Any) -> bool:
    """Compare two leaf payloads.

    Tensors (numpy arrays) compare by identity only, whatever their size or
    contents. Other values compare by identity, then ``==``; a result that
    cannot be reduced to a single bool counts as unequal.
    """
    if a is b:
        return True
    if isinstance(a, np.ndarray) or isinstance(b, np.ndarray):
        return False
    try:
        return bool(a == b)
    except (TypeError, ValueError):
        return False


class NestedItem(t.Generic[T]):
    """A single node of a nested tree.

    Exactly one shape is active: a leaf ``VALUE``, a ``DICTIONARY`` of
    string keys to nodes, an ``ARRAY`` of nodes or ``NONE``. ``NONE`` entries
    inside a dictionary or array are placeholders meaning "present in the
    shape but carrying nothing", which is different from an absent key.

    Items are immutable once built. Use the class constructors rather than
    ``__init__``::

        NestedItem.value(w)
        NestedItem.dictionary({"weight": NestedItem.value(w)})
        NestedItem.array([NestedItem.value(a), NestedItem.none()])
    """

    __slots__ = ("_kind", "_payload")
    _NONE: t.ClassVar[NestedItem | None] = None

    def __init__(self, kind: ItemKind, payload: t.Any = None):
        self._kind = kind
        self._payload = payload

    @classmethod
    def value(cls, value: T) -> NestedItem[T]:
        return cls(ItemKind.VALUE, value)

    @classmethod
    def dictionary(cls, values: t.Mapping[str, t.Any]) -> NestedItem[T]:
        return cls(
            ItemKind.DICTIONARY,
            {str(k): cls.from_plain(v) for k, v in values.items()},
        )

    @classmethod
    def array(cls, values: t.Iterable[t.Any]) -> NestedItem[T]:
        return cls(ItemKind.ARRAY, [cls.from_plain(v) for v in values])

    @classmethod
    def none(cls) -> NestedItem[T]:
        if NestedItem._NONE is None:
            NestedItem._NONE = NestedItem(ItemKind.NONE)
        return NestedItem._NONE

    @classmethod
    def from_plain(cls, obj: t.Any) -> NestedItem:
        """Convert plain python containers into a nested item.

        ``dict`` becomes a dictionary, ``list`` and ``tuple`` become an array,
        ``None`` becomes ``NONE`` and any other object becomes a leaf value.
        Existing items pass through unchanged.
        """
        if isinstance(obj, NestedItem):
            return obj
        if isinstance(obj, NestedDictionary):
            return obj.as_item()
        if obj is None:
            return cls.none()
        if isinstance(obj, dict):
            return cls.dictionary(obj)
        if isinstance(obj, (list, tuple)):
            return cls.array(obj)
        return cls.value(obj)

    @property
    def kind(self) -> ItemKind:
        return self._kind

    @property
    def is_none(self) -> bool:
        return self._kind is ItemKind.NONE

    @property
    def is_value(self) -> bool:
        return self._kind is ItemKind.VALUE

    @property
    def is_dictionary(self) -> bool:
        return self._kind is ItemKind.DICTIONARY

    @property
    def is_array(self) -> bool:
        return self._kind is ItemKind.ARRAY

    def unwrap(self) -> t.Any:
        """Return the payload: the leaf, a copy of the dict or list, or None."""
        if self._kind is ItemKind.DICTIONARY:
            return dict(self._payload)
        if self._kind is ItemKind.ARRAY:
            return list(self._payload)
        return self._payload

    def to_plain(self) -> t.Any:
        if self._kind is ItemKind.DICTIONARY:
            return {k: v.to_plain() for k, v in self._payload.items()}
        if self._kind is ItemKind.ARRAY:
            return [v.to_plain() for v in self._payload]
        return self._payload

    def flattened(self, prefix: str | None = None) -> list[tuple[str, T]]:
        """Flatten into ``(dotted.path, value)`` pairs, skipping ``NONE``."""
        if self._kind is ItemKind.VALUE:
            return [(prefix or "", self._payload)]
        if self._kind is ItemKind.NONE:
            return []

        if self._kind is ItemKind.DICTIONARY:
            entries = self._payload.items()
        else:
            entries = ((str(i), v) for i, v in enumerate(self._payload))

        result = []
        for k, v in entries:
            result.extend(v.flattened(k if prefix is None else f"{prefix}.{k}"))
        return result

    def map_values(self, fn: t.Callable[[T], R | None]) -> NestedItem[R]:
        """Rebuild the same shape with ``fn`` applied to each leaf.

        A leaf mapped to ``None`` becomes ``NONE``.
        """
        if self._kind is ItemKind.VALUE:
            mapped = fn(self._payload)
            return NestedItem.none() if mapped is None else NestedItem.value(mapped)
        if self._kind is ItemKind.DICTIONARY:
            return NestedItem(
                ItemKind.DICTIONARY,
                {k: v.map_values(fn) for k, v in self._payload.items()},
            )
        if self._kind is ItemKind.ARRAY:
            return NestedItem(
                ItemKind.ARRAY, [v.map_values(fn) for v in self._payload]
            )
        return self

    def __eq__(self, other):
        if not isinstance(other, NestedItem):
            if isinstance(other, (NestedDictionary, dict, list, tuple)) or other is None:
                other = NestedItem.from_plain(other)
            else:
                return NotImplemented
        if self._kind is not other._kind:
            return False
        if self._kind is ItemKind.VALUE:
            return _values_equal(self._payload, other._payload)
        if self._kind is ItemKind.NONE:
            return True
        if self._kind is ItemKind.ARRAY and len(self._payload) != len(other._payload):
            return False
        return self._payload == other._payload

    __hash__ = None

    def __repr__(self):
        if self._kind is ItemKind.NONE:
            return "NestedItem.none()"
        return f"NestedItem.{self._kind.name.lower()}({self._payload!r})"


class NestedDictionary(t.MutableMapping[str, NestedItem[T]]):
    """A named mapping of ``str`` to :class:`NestedItem`.

    This is the collection type produced by every query on a module and
    accepted by the update operations. Assigning a plain value converts it
    with :meth:`NestedItem.from_plain`.

    >>> d = NestedDictionary({"layers": [{"weight": 1}, {"weight": 2}]})
    >>> d.flattened()
    [('layers.0.weight', 1), ('layers.1.weight', 2)]
    """

    def __init__(self, values: t.Mapping[str, t.Any] | None = None):
        self._values: dict[str, NestedItem[T]] = {}
        if values is not None:
            for k, v in values.items():
                self[k] = v

    @classmethod
    def from_plain(cls, values: t.Mapping[str, t.Any]) -> NestedDictionary:
        if isinstance(values, NestedDictionary):
            return values
        return cls(values)

    @classmethod
    def unflattened(cls, pairs: t.Iterable[tuple[str, T]] | t.Mapping[str, T]) -> NestedDictionary[T]:
        """Rebuild a nested dictionary from ``(dotted.path, value)`` pairs.

        Below the top level, a node whose keys are all numeric becomes an
        array; missing indices are filled with ``NONE``.
        """
        if isinstance(pairs, Mapping):
            pairs = pairs.items()

        root: dict[str, t.Any] = {}
        for path, value in pairs:
            parts = path.split(".")
            node = root
            for part in parts[:-1]:
                child = node.setdefault(part, {})
                if isinstance(child, NestedItem):
                    raise ValueError(f"Path '{path}' conflicts with an existing leaf")
                node = child
            if parts[-1] in node:
                raise ValueError(f"Duplicate or conflicting path '{path}'")
            node[parts[-1]] = NestedItem.value(value)

        return cls({k: _build_unflattened(v) for k, v in root.items()})

    def __getitem__(self, key: str) -> NestedItem[T]:
        return self._values[key]

    def __setitem__(self, key: str, value: t.Any):
        if not isinstance(key, str):
            raise TypeError(f"Keys must be strings, not {type(key).__name__}")
        self._values[key] = NestedItem.from_plain(value)

    def __delitem__(self, key: str):
        del self._values[key]

    def __iter__(self) -> t.Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def flattened(self, prefix: str | None = None) -> list[tuple[str, T]]:
        result = []
        for k, v in self._values.items():
            result.extend(v.flattened(k if prefix is None else f"{prefix}.{k}"))
        return result

    def as_item(self) -> NestedItem[T]:
        return NestedItem(ItemKind.DICTIONARY, dict(self._values))

    def to_plain(self) -> dict[str, t.Any]:
        return {k: v.to_plain() for k, v in self._values.items()}

    def map_values(self, fn: t.Callable[[T], R | None]) -> NestedDictionary[R]:
        result = NestedDictionary()
        for k, v in self._values.items():
            result[k] = v.map_values(fn)
        return result

    def __repr__(self):
        return f"NestedDictionary({self._values!r})"


def _build_unflattened(node: t.Any) -> NestedItem:
    if isinstance(node, NestedItem):
        return node
    if node and all(k.isdigit() for k in node):
        items = [NestedItem.none()] * (max(int(k) for k in node) + 1)
        for k, v in node.items():
            items[int(k)] = _build_unflattened(v)
        return NestedItem(ItemKind.ARRAY, items)
    return NestedItem(
        ItemKind.DICTIONARY,
        {k: _build_unflattened(v) for k, v in node.items()},
    )
