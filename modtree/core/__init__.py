from ._errors import (
    ContractViolation,
    UpdateError,
    UnmatchedKeysError,
    MissingKeysError,
    IncompatibleShapeError,
    MissingWriteCapabilityError,
    KeyNotFoundError,
    CastError,
)
from ._nested import (
    ItemKind,
    NestedItem,
    NestedDictionary,
)
from ._tensor import (
    Tensor,
    is_tensor,
    update_tensor,
)
from ._value import (
    ValueKind,
    ModuleValue,
)
from ._slots import (
    ParameterInfo,
    ModuleInfo,
    AttributeSlot,
    module_slots,
    find_slot,
    write_slot,
)
from ._filters import (
    ModuleItem,
    Filter,
    LeafTest,
    Mapper,
    filter_all,
    filter_valid_child,
    filter_valid_parameters,
    filter_local_parameters,
    filter_trainable_parameters,
    filter_other,
    map_parameters,
    map_module,
    map_other,
    is_leaf_default,
    is_leaf_module,
    is_leaf_module_no_children,
)
from ._module import (
    Verify,
    Module,
)
