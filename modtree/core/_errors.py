# 1st party
from __future__ import annotations
import typing as t


class ContractViolation(RuntimeError):
    """Raised for programmer errors that callers are not expected to recover from.

    This covers predicates passed to ``filter_map`` that leave an item
    unresolved, and any failure escalated by the non-verifying convenience
    entry points (``Module.update``, ``Module.apply``).
    """


class UpdateError(Exception):
    """Base class for recoverable failures when mutating a module tree."""

    def __init__(self, message: str, *, base: str):
        super().__init__(message)
        self.base = base


class UnmatchedKeysError(UpdateError):
    """The replacement payload held keys that do not exist on the module."""

    def __init__(self, *, base: str, keys: t.Iterable[str]):
        self.keys = sorted(keys)
        super().__init__(
            f"Unhandled keys {self.keys} in update of {base}", base=base
        )


class MissingKeysError(UpdateError):
    """The module holds parameters that the replacement payload did not provide."""

    def __init__(self, *, base: str, keys: t.Iterable[str]):
        self.keys = sorted(keys)
        super().__init__(
            f"Missing keys {self.keys} in update of {base}", base=base
        )


class IncompatibleShapeError(UpdateError):

    def __init__(self, message: str, *, base: str, key: str):
        super().__init__(message, base=base)
        self.key = key


class MissingWriteCapabilityError(UpdateError):
    """The attribute cannot be replaced wholesale (not declared with ``ModuleInfo``)."""

    def __init__(self, *, base: str, key: str):
        super().__init__(
            f"Unable to set {base}.{key}: attribute must be declared with "
            "ModuleInfo to receive module updates",
            base=base,
        )
        self.key = key


class KeyNotFoundError(UpdateError):

    def __init__(self, *, base: str, key: str):
        super().__init__(f"Key '{key}' not found in {base}", base=base)
        self.key = key


class CastError(UpdateError):
    """The replacement value does not match the declared type of the attribute."""

    def __init__(self, message: str, *, base: str, key: str):
        super().__init__(message, base=base)
        self.key = key
