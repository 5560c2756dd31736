# 1st party
from __future__ import annotations
from collections.abc import Mapping
from enum import Flag
import logging
import typing as t

# 3rd party
import pydantic

# Local
from modtree.config import get_config
from ._errors import (
    CastError,
    ContractViolation,
    IncompatibleShapeError,
    KeyNotFoundError,
    MissingKeysError,
    UnmatchedKeysError,
    UpdateError,
)
from ._filters import (
    Filter,
    LeafTest,
    ModuleItem,
    filter_local_parameters,
    filter_other,
    filter_trainable_parameters,
    filter_valid_child,
    filter_valid_parameters,
    is_leaf_default,
    is_leaf_module,
    is_leaf_module_no_children,
    map_module,
    map_other,
    map_parameters,
)
from ._nested import ItemKind, NestedDictionary, NestedItem
from ._slots import module_slots, write_slot
from ._tensor import update_tensor
from ._value import ModuleValue

logger = logging.getLogger("modtree.module")

R = t.TypeVar("R")


class Verify(Flag):
    """Checks applied by :meth:`Module.update_parameters` and :meth:`Module.update_modules`."""

    NONE = 0
    # every replacement key must match an attribute of the module
    NO_UNUSED_KEYS = 1
    # every parameter of the module must be provided (update_parameters only)
    NO_MISSING_KEYS = 2
    ALL = 3


def _item_value(item: ModuleItem) -> t.Any:
    return item.unwrap()


def _is_module_item(item: ModuleItem) -> bool:
    return item.kind is ItemKind.VALUE and item.unwrap().is_module


def _is_parameters_item(item: ModuleItem) -> bool:
    return item.kind is ItemKind.VALUE and item.unwrap().is_parameters


class Module(pydantic.BaseModel):
    """Base class for a tree of modules holding tensors.

    A module declares its attributes as pydantic fields. Each attribute is a
    tensor (``numpy.ndarray``), another ``Module``, a list or dict of those,
    or any other value, which is treated as opaque configuration::

        class Linear(Module):
            weight: np.ndarray
            bias: np.ndarray | None = None

        class MLP(Module):
            layers: Annotated[list[Linear], ModuleInfo()]
            eps: float = 1e-5

    :meth:`items` exposes the attributes as a nested tree and
    :meth:`filter_map` walks that tree; :meth:`parameters`, :meth:`children`
    and the other queries are built on it. :meth:`update_parameters` writes
    tensor contents back in place and :meth:`update_modules` replaces
    sub-modules held in ``ModuleInfo`` attributes.

    Parameters are trainable unless frozen with :meth:`freeze`. Frozen keys
    are local to the module that owns the parameter.
    """

    model_config = pydantic.ConfigDict(arbitrary_types_allowed=True)

    _training: bool = pydantic.PrivateAttr(default=True)
    _no_grad: set[str] = pydantic.PrivateAttr(default_factory=set)

    @property
    def training(self) -> bool:
        return self._training

    @property
    def no_grad(self) -> frozenset[str]:
        """The locally frozen keys of this module."""
        return frozenset(self._no_grad)

    def items(self) -> NestedDictionary[ModuleValue]:
        """Return the attributes of the module as a nested tree.

        Subclasses may override this to provide custom introspection.
        """
        result = NestedDictionary()
        for slot in module_slots(self):
            result[slot.key] = ModuleValue.build(slot.value)
        return result

    def filter_map(
        self,
        filter: Filter,
        map: t.Callable[[ModuleItem], R | None] | None = None,
        is_leaf: LeafTest = is_leaf_default,
    ) -> NestedDictionary[R]:
        """Recursively filter and map the contents of the module and its children.

        For every entry of :meth:`items` (and, recursively, every entry of
        nested lists, dicts and sub-modules) ``filter`` decides whether the
        entry is examined. ``is_leaf`` then decides whether the entry is
        passed to ``map`` or traversed. By default ``map`` returns the
        :class:`ModuleValue` of the leaf.

        Filtered out entries inside a list or dict are kept as ``NONE``
        placeholders so positions line up with the module. Filtered out
        top-level entries are omitted. A list or dict whose every entry ends
        up ``NONE`` collapses to ``NONE``.

        Args:
            filter: ``(module, key, item) -> bool``
            map: ``(item) -> value``, ``None`` results are dropped
            is_leaf: ``(module, key, item) -> bool``

        Returns:
            NestedDictionary: the mapped values with the shape of the module

        Raises:
            ContractViolation: ``is_leaf`` left an item that cannot be traversed
        """
        if map is None:
            map = _item_value

        def unwrap(vk: str, v: ModuleItem) -> NestedItem:
            if is_leaf(self, vk, v):
                mapped = map(v)
                return NestedItem.none() if mapped is None else NestedItem.value(mapped)

            if _is_module_item(v):
                return v.unwrap().value.filter_map(filter, map, is_leaf).as_item()

            if v.kind is ItemKind.DICTIONARY:
                result = {}
                for k, vi in v.unwrap().items():
                    tk = f"{vk}.{k}"
                    result[k] = unwrap(tk, vi) if filter(self, tk, vi) else NestedItem.none()
                if all(r.is_none for r in result.values()):
                    return NestedItem.none()
                return NestedItem(ItemKind.DICTIONARY, result)

            if v.kind is ItemKind.ARRAY:
                result = []
                for i, vi in enumerate(v.unwrap()):
                    tk = f"{vk}.{i}"
                    result.append(unwrap(tk, vi) if filter(self, tk, vi) else NestedItem.none())
                if all(r.is_none for r in result):
                    return NestedItem.none()
                return NestedItem(ItemKind.ARRAY, result)

            raise ContractViolation(
                f"Unexpected leaf {vk} = {v!r} in {type(self).__name__}"
            )

        result = NestedDictionary()
        for key, item in self.items().items():
            if not filter(self, key, item):
                continue
            unwrapped = unwrap(key, item)
            if not unwrapped.is_none:
                result[key] = unwrapped
        return result

    def map_parameters(
        self,
        map: t.Callable[[t.Any], R | None] | None = None,
        is_leaf: LeafTest = is_leaf_default,
    ) -> NestedDictionary[R]:
        """Apply ``map`` to every tensor of the module and its children.

        >>> shapes = model.map_parameters(lambda w: w.shape)
        """
        return self.filter_map(filter_valid_parameters, map_parameters(map), is_leaf)

    def parameters(self) -> NestedDictionary:
        """All tensors of the module and its children."""
        return self.filter_map(filter_valid_parameters, map_parameters())

    def trainable_parameters(self) -> NestedDictionary:
        """All tensors of the module and its children that are not frozen."""
        return self.filter_map(filter_trainable_parameters, map_parameters())

    def children(self) -> NestedDictionary[Module]:
        """The direct sub-modules."""
        return self.filter_map(filter_valid_child, map_module(), is_leaf_module)

    def leaf_modules(self) -> NestedDictionary[Module]:
        """The sub-modules, at any depth, that have no children."""
        return self.filter_map(filter_valid_child, map_module(), is_leaf_module_no_children)

    def update_parameters(
        self,
        parameters: NestedDictionary | t.Mapping[str, t.Any],
        verify: Verify = Verify.NONE,
    ) -> Module:
        """Replace the contents of the module's tensors.

        ``parameters`` has the shape produced by :meth:`parameters`. Tensors
        are updated in place, so their identity does not change. Omitted
        keys and ``None`` entries are left unchanged.

        Args:
            parameters: the replacement tensors
            verify: ``NO_UNUSED_KEYS`` fails on keys that match nothing,
                ``NO_MISSING_KEYS`` fails, before anything is changed, on
                parameters that were not provided

        Raises:
            UnmatchedKeysError: unused keys with ``Verify.NO_UNUSED_KEYS``
            MissingKeysError: missing keys with ``Verify.NO_MISSING_KEYS``
            IncompatibleShapeError: a replacement does not fit the module
            CastError: a replacement dtype cannot be cast to the tensor's
        """
        parameters = NestedDictionary.from_plain(parameters)
        base = type(self).__name__

        if Verify.NO_MISSING_KEYS in verify:
            provided = {k for k, _ in parameters.flattened()}
            missing = [k for k, _ in self.parameters().flattened() if k not in provided]
            if missing:
                raise MissingKeysError(base=base, keys=missing)
            verify &= ~Verify.NO_MISSING_KEYS

        unused: list[str] = []

        def apply(key: str, item: ModuleItem, value: NestedItem) -> None:
            if value.is_none:
                return

            if _is_parameters_item(item) and value.is_value:
                new_value = value.unwrap()
                if isinstance(new_value, Module):
                    raise IncompatibleShapeError(
                        f"Unable to set {key} on {base}: parameters cannot be updated with a module",
                        base=base,
                        key=key,
                    )
                try:
                    update_tensor(item.unwrap().value, new_value)
                except ValueError as e:
                    raise IncompatibleShapeError(
                        f"Unable to set {key} on {base}: {e}", base=base, key=key
                    ) from e
                except TypeError as e:
                    raise CastError(
                        f"Unable to set {key} on {base}: {e}", base=base, key=key
                    ) from e

            elif item.is_array and value.is_array:
                items, values = item.unwrap(), value.unwrap()
                if len(values) > len(items):
                    raise IncompatibleShapeError(
                        f"Unable to set {key} on {base}: {len(values)} values for {len(items)} entries",
                        base=base,
                        key=key,
                    )
                for i, (array_item, value_item) in enumerate(zip(items, values)):
                    apply(f"{key}.{i}", array_item, value_item)

            elif item.is_dictionary and value.is_dictionary:
                items = item.unwrap()
                for value_key, value_item in value.unwrap().items():
                    if value_key in items:
                        apply(f"{key}.{value_key}", items[value_key], value_item)
                    else:
                        unused.append(f"{key}.{value_key}")

            elif _is_module_item(item) and value.is_dictionary:
                item.unwrap().value.update_parameters(
                    NestedDictionary(value.unwrap()), verify
                )

            else:
                raise IncompatibleShapeError(
                    f"Unable to set {key} on {base}: {item!r} not compatible with {value!r}",
                    base=base,
                    key=key,
                )

        items = self.items()
        for key, value in parameters.items():
            if key in items:
                apply(key, items[key], value)
            else:
                unused.append(key)

        self._check_unused(unused, verify)
        return self

    def update_modules(
        self,
        modules: NestedDictionary | t.Mapping[str, t.Any],
        verify: Verify = Verify.NONE,
    ) -> Module:
        """Replace sub-modules of the module.

        ``modules`` has the shape produced by :meth:`children` or
        :meth:`leaf_modules`. A module value replaces the attribute
        wholesale, which requires the attribute to be declared with
        ``ModuleInfo``; a dict recurses into the existing sub-module.

        For list and dict attributes the first non-``None`` replacement entry
        decides: a module replaces the whole list or dict, a dict recurses
        into each existing element::

            model.update_modules({"layers": [Linear(...)]})          # replace
            model.update_modules({"layers": [{"act": GELU()}, None]}) # recurse

        Raises:
            UnmatchedKeysError: unused keys with ``Verify.NO_UNUSED_KEYS``
            IncompatibleShapeError: a replacement does not fit the module
            MissingWriteCapabilityError: the attribute is not replaceable
            CastError: the replacement does not match the declared type
            KeyNotFoundError: the attribute to replace could not be found
        """
        modules = NestedDictionary.from_plain(modules)
        base = type(self).__name__
        unused: list[str] = []

        def apply(key: str, item: ModuleItem, value: NestedItem) -> None:
            if value.is_none:
                return

            if _is_parameters_item(item):
                raise IncompatibleShapeError(
                    f"Unable to set {key} on {base}: parameters cannot be updated with a module",
                    base=base,
                    key=key,
                )

            if _is_module_item(item) and value.is_value:
                write_slot(self, key, value.unwrap())

            elif _is_module_item(item) and value.is_dictionary:
                item.unwrap().value.update_modules(
                    NestedDictionary(value.unwrap()), verify
                )

            elif (item.is_array and value.is_array) or (
                item.is_dictionary and value.is_dictionary
            ):
                self._update_module_container(key, item, value, verify, unused)

            else:
                raise IncompatibleShapeError(
                    f"Unable to set {key} on {base}: {item!r} not compatible with {value!r}",
                    base=base,
                    key=key,
                )

        items = self.items()
        for key, value in modules.items():
            if key in items:
                apply(key, items[key], value)
            else:
                unused.append(key)

        self._check_unused(unused, verify)
        return self

    def _update_module_container(
        self,
        key: str,
        item: ModuleItem,
        value: NestedItem,
        verify: Verify,
        unused: list[str],
    ) -> None:
        base = type(self).__name__
        targets = item.unwrap()
        entries = value.unwrap()
        is_array = item.is_array
        replacements = entries if is_array else list(entries.values())

        present = [v for v in replacements if not v.is_none]
        if not present:
            return

        if present[0].is_value:
            # replace the whole list / dict
            if not all(v.is_value for v in replacements):
                raise IncompatibleShapeError(
                    f"Unable to collect modules from container {base}.{key}",
                    base=base,
                    key=key,
                )
            if is_array:
                new_modules = [v.unwrap() for v in entries]
            else:
                new_modules = {k: v.unwrap() for k, v in entries.items()}
            write_slot(self, key, new_modules)
            return

        if not present[0].is_dictionary:
            raise IncompatibleShapeError(
                f"Unexpected structure for {key} on {base}: expected modules or dicts",
                base=base,
                key=key,
            )

        # recurse into each existing element
        if is_array:
            if len(entries) > len(targets):
                raise IncompatibleShapeError(
                    f"Unable to set {key} on {base}: {len(entries)} values for {len(targets)} entries",
                    base=base,
                    key=key,
                )
            pairs = [(str(i), targets[i], v) for i, v in enumerate(entries)]
        else:
            pairs = []
            for k, v in entries.items():
                if k not in targets:
                    unused.append(f"{key}.{k}")
                    continue
                pairs.append((k, targets[k], v))

        for k, target, replacement in pairs:
            if replacement.is_none:
                continue
            if not (_is_module_item(target) and replacement.is_dictionary):
                raise IncompatibleShapeError(
                    f"Mismatched containers for {key}.{k} on {base}",
                    base=base,
                    key=f"{key}.{k}",
                )
            target.unwrap().value.update_modules(
                NestedDictionary(replacement.unwrap()), verify
            )

    def _check_unused(self, unused: list[str], verify: Verify) -> None:
        if not unused:
            return
        if Verify.NO_UNUSED_KEYS in verify:
            raise UnmatchedKeysError(base=type(self).__name__, keys=unused)
        if get_config().Update.warn_unused_keys:
            logger.warning(
                "Ignoring unused keys %s in update of %s", sorted(unused), type(self).__name__
            )

    def update(
        self,
        parameters: NestedDictionary | t.Mapping[str, t.Any] | None = None,
        modules: NestedDictionary | t.Mapping[str, t.Any] | None = None,
    ) -> Module:
        """Non-verifying form of :meth:`update_parameters` and :meth:`update_modules`.

        Intended for call sites that know the tree is consistent: any
        :class:`UpdateError` is escalated to :class:`ContractViolation`.
        """
        try:
            if parameters is not None:
                self.update_parameters(parameters, Verify.NONE)
            if modules is not None:
                self.update_modules(modules, Verify.NONE)
        except UpdateError as e:
            raise ContractViolation(str(e)) from e
        return self

    def apply(
        self,
        map: t.Callable[[t.Any], t.Any],
        filter: Filter = filter_valid_parameters,
    ) -> Module:
        """Map the selected tensors and write the results back in place.

        >>> model.apply(lambda w: w * 2)
        """
        return self.update(parameters=self.filter_map(filter, map_parameters(map)))

    def visit(self, visitor: t.Callable[[str, Module], None]) -> None:
        """Call ``visitor(path, module)`` for this module and every descendant.

        Depth first, driven by a stack; the order of siblings is not
        guaranteed.
        """
        stack: list[tuple[str, Module]] = [("", self)]
        while stack:
            prefix, module = stack.pop()
            visitor(prefix, module)
            stack.extend(module.children().flattened(prefix or None))

    def modules(self) -> list[Module]:
        """All modules in the tree, including this one."""
        result = []
        self.visit(lambda _, m: result.append(m))
        return result

    def named_modules(self) -> list[tuple[str, Module]]:
        """All ``(path, module)`` pairs in the tree; this module has the path ``""``."""
        result = []
        self.visit(lambda k, m: result.append((k, m)))
        return result

    def _freeze_visitor(
        self,
        keys: t.Iterable[str] | str | None,
        strict: bool,
        update: t.Callable[[Module, t.Iterable[str]], None],
    ) -> t.Callable[[str, Module], None]:
        if isinstance(keys, str):
            keys = [keys]
        elif keys is not None:
            keys = list(keys)

        def visit(path: str, module: Module) -> None:
            if keys is not None and not strict:
                update(module, keys)
                return
            local_keys = [k for k, _ in module.filter_map(filter_local_parameters).flattened()]
            if keys is None:
                update(module, local_keys)
                return
            for key in keys:
                if key not in local_keys:
                    raise KeyNotFoundError(base=type(module).__name__, key=key)
            update(module, keys)

        return visit

    def freeze(
        self,
        recursive: bool = True,
        keys: t.Iterable[str] | str | None = None,
        strict: bool = False,
    ) -> Module:
        """Freeze the module's parameters or a subset of them.

        Frozen parameters are left out of :meth:`trainable_parameters`.
        Freezing is idempotent.

        Args:
            recursive: also freeze the parameters of every sub-module
            keys: local keys to freeze, all local parameters when omitted
            strict: fail if a key is not a local parameter of a visited module

        Raises:
            KeyNotFoundError: with ``strict``, before changing that module
        """
        visitor = self._freeze_visitor(keys, strict, lambda m, ks: m._no_grad.update(ks))
        if recursive:
            self.visit(visitor)
        else:
            visitor("", self)
        logger.debug("Froze %s (recursive=%s, keys=%s)", type(self).__name__, recursive, keys)
        return self

    def unfreeze(
        self,
        recursive: bool = True,
        keys: t.Iterable[str] | str | None = None,
        strict: bool = False,
    ) -> Module:
        """Unfreeze the module's parameters or a subset of them.

        Takes the same arguments as :meth:`freeze`. Unfreezing is idempotent.
        """
        visitor = self._freeze_visitor(keys, strict, lambda m, ks: m._no_grad.difference_update(ks))
        if recursive:
            self.visit(visitor)
        else:
            visitor("", self)
        logger.debug("Unfroze %s (recursive=%s, keys=%s)", type(self).__name__, recursive, keys)
        return self

    def train(self, mode: bool = True) -> Module:
        """Recursively set the training mode."""

        def set_mode(path: str, module: Module) -> None:
            module._training = mode

        self.visit(set_mode)
        logger.debug("Set training=%s on %s", mode, type(self).__name__)
        return self

    def eval(self) -> Module:
        """Alias for ``train(False)``."""
        return self.train(False)

    def state_dict(self) -> dict[str, t.Any]:
        """The tensors of the module keyed by dotted path."""
        return dict(self.parameters().flattened())

    def load_state_dict(self, sd: t.Mapping[str, t.Any], *, strict: bool = True) -> Module:
        """Copy tensors from a flat ``{dotted.path: tensor}`` mapping.

        With ``strict`` every key must match a parameter and every parameter
        must be provided.
        """
        if not isinstance(sd, Mapping):
            raise TypeError(f"State dict must be a mapping, not {type(sd)}")
        return self.update_parameters(
            NestedDictionary.unflattened(sd), Verify.ALL if strict else Verify.NONE
        )

    def describe_extra(self, indent: int = 0) -> str:
        """Describe the opaque attributes, e.g. ``(eps=1e-05)``.

        Subclasses can override this to describe themselves differently.
        """
        other = self.filter_map(filter_other, map_other())
        if not other:
            return ""
        kv = sorted(other.items())
        return "(" + ", ".join(f"{k}={v.unwrap()}" for k, v in kv) + ")"

    def description(self, indent: int = 0) -> str:
        result = f"{type(self).__name__}{self.describe_extra(indent)}"
        children = self.children()
        if not children:
            return result

        step = get_config().Describe.indent
        pad = " " * indent
        lines = [
            f"{pad}{' ' * step}{k}: {_describe_item(v, indent + step, step)},"
            for k, v in sorted(children.items())
        ]
        return result + " {\n" + "\n".join(lines) + f"\n{pad}}}"

    def __str__(self):
        return self.description()


def _describe_item(item: NestedItem, indent: int, step: int) -> str:
    if item.is_value:
        return item.unwrap().description(indent)
    if item.is_none:
        return "None"

    pad = " " * indent
    inner = " " * (indent + step)
    if item.is_array:
        lines = [f"{inner}{_describe_item(v, indent + step, step)}," for v in item.unwrap()]
        return "[\n" + "\n".join(lines) + f"\n{pad}]"
    lines = [
        f"{inner}{k}: {_describe_item(v, indent + step, step)},"
        for k, v in sorted(item.unwrap().items())
    ]
    return "{\n" + "\n".join(lines) + f"\n{pad}}}"
