from __future__ import annotations

from typing import Any

from pydantic import BaseModel


class ConfigNode:
    """Attribute and item view over a settings model, optionally read-only."""

    def __init__(self, value: BaseModel, frozen: bool = False):
        object.__setattr__(self, "_value", value)
        object.__setattr__(self, "_frozen", frozen)

    def __getattr__(self, name: str) -> Any:
        return self._wrap(getattr(self._value, name))

    def __getitem__(self, key: str) -> Any:
        try:
            return self._wrap(getattr(self._value, key))
        except AttributeError:
            raise KeyError(key) from None

    def __setattr__(self, name: str, value: Any) -> None:
        self._check_writable()
        setattr(self._value, name, value)

    def __setitem__(self, key: str, value: Any) -> None:
        self._check_writable()
        setattr(self._value, key, value)

    def __dir__(self):
        return list(type(self._value).model_fields)

    def to_dict(self) -> dict[str, Any]:
        return self._value.model_dump()

    def _check_writable(self) -> None:
        if object.__getattribute__(self, "_frozen"):
            raise RuntimeError("Configuration is read-only")

    def _wrap(self, attr: Any) -> Any:
        if isinstance(attr, BaseModel):
            return ConfigNode(attr, object.__getattribute__(self, "_frozen"))
        return attr

    def __repr__(self):
        return f"{type(self).__name__}({self._value!r})"


class ConfigAccessor(ConfigNode):
    def __init__(self, value: BaseModel):
        super().__init__(value, False)

    @property
    def model(self) -> BaseModel:
        """The underlying settings instance."""
        return object.__getattribute__(self, "_value")

    def freeze(self) -> None:
        object.__setattr__(self, "_frozen", True)
