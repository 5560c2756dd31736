# 1st party
from __future__ import annotations
import logging
import typing as t

# 3rd party
import numpy as np

# Local
from modtree.config import get_config

logger = logging.getLogger("modtree.tensor")

Tensor = np.ndarray


def is_tensor(value: t.Any) -> bool:
    return isinstance(value, np.ndarray)


def update_tensor(target: np.ndarray, value: t.Any) -> np.ndarray:
    """Overwrite the contents of ``target`` with ``value`` in place.

    The identity of ``target`` never changes. Casting follows
    ``config.Tensor.casting`` and, unless ``config.Tensor.strict_shapes`` is
    disabled, the shapes must match exactly.

    Raises:
        ValueError: the shapes are incompatible
        TypeError: the dtype cannot be cast under the configured rule, or
            ``target`` is read-only
    """
    if not target.flags.writeable:
        raise TypeError(f"Tensor of shape {target.shape} is read-only")
    tensor_config = get_config().Tensor
    source = np.asarray(value)
    if tensor_config.strict_shapes and source.shape != target.shape:
        raise ValueError(
            f"Shape {source.shape} does not match tensor of shape {target.shape}"
        )
    np.copyto(target, source, casting=tensor_config.casting)
    logger.debug("Updated tensor %s in place from %s", target.shape, source.dtype)
    return target
