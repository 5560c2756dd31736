from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Type, TypeVar

from ._accessor import ConfigAccessor, ConfigNode
from ._models import DescribeConfig, ModtreeConfig, TensorConfig, UpdateConfig

T = TypeVar("T", bound=ModtreeConfig)

_global_config: ConfigAccessor | None = None
_config_class: Type[ModtreeConfig] = ModtreeConfig


def _build_config_class(base_cls: Type[T], yaml_file: str | None) -> Type[T]:
    if yaml_file is None:
        return base_cls
    config_dict: dict[str, Any] = {**base_cls.model_config, "yaml_file": yaml_file}
    return type(
        f"{base_cls.__name__}WithYaml",
        (base_cls,),
        {"model_config": config_dict},
    )


def init_config(config_path: str | None = None, config_class: Type[T] | None = None) -> ConfigAccessor:
    """Build the process-wide configuration.

    Sources are, by precedence: environment variables (``MODTREE_`` prefix,
    ``__`` between sections), ``config_path`` or the default YAML files, then
    defaults.
    """
    global _global_config, _config_class
    if _global_config is not None:
        raise RuntimeError("Config already initialized. Call reset_config() first.")
    base_class: Type[T]
    if config_class is not None:
        if not issubclass(config_class, ModtreeConfig):
            raise TypeError("config_class must extend ModtreeConfig")
        _config_class = config_class
        base_class = config_class
    else:
        base_class = _config_class  # type: ignore[assignment]
    effective_class = _build_config_class(base_class, config_path)
    accessor = ConfigAccessor(effective_class())
    accessor.freeze()
    _global_config = accessor
    return accessor


def get_config() -> ConfigAccessor:
    global _global_config
    if _global_config is None:
        _global_config = init_config()
    return _global_config


def reset_config() -> None:
    global _global_config, _config_class
    _global_config = None
    _config_class = ModtreeConfig


@contextmanager
def use_config(settings: ModtreeConfig) -> Iterator[ConfigAccessor]:
    """Temporarily replace the global configuration with ``settings``."""
    global _global_config
    previous = _global_config
    accessor = ConfigAccessor(settings)
    accessor.freeze()
    _global_config = accessor
    try:
        yield accessor
    finally:
        _global_config = previous


class _ConfigProxy:
    def __getattr__(self, name: str) -> Any:
        return getattr(get_config(), name)

    def __getitem__(self, key: str) -> Any:
        return get_config()[key]


config = _ConfigProxy()


__all__ = [
    "config",
    "init_config",
    "get_config",
    "reset_config",
    "use_config",
    "ModtreeConfig",
    "TensorConfig",
    "UpdateConfig",
    "DescribeConfig",
    "ConfigAccessor",
    "ConfigNode",
]
