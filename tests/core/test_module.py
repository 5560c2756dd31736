from typing import Annotated

import numpy as np
import pytest

from modtree.config import DescribeConfig, ModtreeConfig, use_config
from modtree.core import (
    ContractViolation,
    Module,
    ModuleInfo,
    ParameterInfo,
    filter_all,
    filter_local_parameters,
    filter_other,
    filter_valid_child,
    filter_valid_parameters,
    is_leaf_module,
    map_module,
    map_parameters,
)


class Linear(Module):
    weight: np.ndarray
    bias: np.ndarray | None = None


class ReLU(Module):
    pass


class Net(Module):
    linear: Annotated[Linear, ModuleInfo()]
    eps: float = 1e-5


class MLP(Module):
    layers: Annotated[list[Linear], ModuleInfo()]
    act: ReLU
    name: str = "mlp"


class Heads(Module):
    heads: dict[str, Linear]
    scale: Annotated[np.ndarray, ParameterInfo(key="s")]
    _buffer: np.ndarray


def linear(i=2, o=4, bias=True):
    return Linear(
        weight=np.zeros((o, i)),
        bias=np.zeros(o) if bias else None,
    )


def mlp():
    return MLP(layers=[linear(), linear(4, 1)], act=ReLU())


class TestItems:

    def test_items_when_tensor_child_and_float_classifies_attributes(self):
        root = Net(linear=Linear(weight=np.zeros((4, 2))))
        items = root.items()
        assert list(items) == ["linear", "eps"]
        assert items["linear"].unwrap().is_module
        assert items["linear"].unwrap().value is root.linear
        assert items["eps"].unwrap().is_other
        assert items["eps"].unwrap().value == 1e-5

    def test_items_when_list_of_modules_creates_array(self):
        module = mlp()
        items = module.items()
        assert items["layers"].is_array
        assert len(items["layers"].unwrap()) == 2

    def test_items_when_key_overridden_uses_override(self):
        module = Heads(heads={"a": linear()}, scale=np.ones(1))
        assert "s" in module.items()
        assert "scale" not in module.items()

    def test_items_when_private_attr_not_set_is_skipped(self):
        module = Heads(heads={"a": linear()}, scale=np.ones(1))
        assert "_buffer" not in module.items()

    def test_items_when_private_attr_set_is_reported(self):
        module = Heads(heads={"a": linear()}, scale=np.ones(1))
        module._buffer = np.zeros(3)
        assert module.items()["_buffer"].unwrap().is_parameters


class TestFilterMap:

    def test_filter_map_when_filter_rejects_top_level_omits_key(self):
        module = linear()
        result = module.filter_map(
            lambda m, k, v: k == "weight", map_parameters()
        )
        assert list(result) == ["weight"]

    def test_filter_map_when_filter_rejects_nested_inserts_placeholder(self):
        module = mlp()
        result = module.filter_map(
            lambda m, k, v: filter_valid_child(m, k, v) and k != "layers.0",
            map_module(),
            is_leaf_module,
        )
        layers = result["layers"].unwrap()
        assert layers[0].is_none
        assert layers[1].unwrap() is module.layers[1]

    def test_filter_map_when_all_nested_rejected_collapses(self):
        module = mlp()
        result = module.filter_map(
            lambda m, k, v: filter_valid_child(m, k, v) and "." not in k,
            map_module(),
            is_leaf_module,
        )
        assert "layers" not in result
        assert result["act"].unwrap() is module.act

    def test_filter_map_when_default_map_returns_module_values(self):
        module = linear()
        result = module.filter_map(filter_local_parameters)
        assert result["weight"].unwrap().value is module.weight

    def test_filter_map_when_map_returns_none_drops_entry(self):
        module = Net(linear=linear())
        result = module.filter_map(filter_other, lambda item: None)
        assert len(result) == 0

    def test_filter_map_when_leaf_left_unresolved_raises(self):
        module = Net(linear=linear())
        with pytest.raises(ContractViolation):
            module.filter_map(filter_all, map_parameters(), lambda m, k, v: False)

    def test_filter_map_when_recursing_reports_keys_relative_to_owner(self):
        module = mlp()
        seen = []

        def record(m, k, v):
            seen.append((type(m).__name__, k))
            return filter_valid_parameters(m, k, v)

        module.filter_map(record, map_parameters())
        assert ("MLP", "layers.0") in seen
        assert ("Linear", "weight") in seen


class TestQueries:

    def test_parameters_when_child_holds_tensor_returns_nested_tensor(self):
        root = Net(linear=Linear(weight=np.zeros((4, 2))))
        params = root.parameters()
        assert params.to_plain().keys() == {"linear"}
        assert params["linear"].unwrap()["weight"].unwrap() is root.linear.weight

    def test_parameters_when_optional_tensor_is_none_skips_it(self):
        module = linear(bias=False)
        assert [k for k, _ in module.parameters().flattened()] == ["weight"]

    def test_parameters_when_list_of_modules_keeps_positions(self):
        module = mlp()
        keys = [k for k, _ in module.parameters().flattened()]
        assert keys == [
            "layers.0.weight",
            "layers.0.bias",
            "layers.1.weight",
            "layers.1.bias",
        ]

    def test_parameters_when_private_tensor_set_is_excluded(self):
        module = Heads(heads={"a": linear()}, scale=np.ones(1))
        module._buffer = np.zeros(3)
        keys = [k for k, _ in module.parameters().flattened()]
        assert "_buffer" not in keys
        assert "s" in keys
        assert "heads.a.weight" in keys

    def test_map_parameters_when_applied_maps_every_tensor(self):
        module = mlp()
        shapes = dict(module.map_parameters(lambda w: w.shape).flattened())
        assert shapes["layers.1.weight"] == (1, 4)

    def test_children_when_nested_returns_direct_sub_modules(self):
        module = mlp()
        children = module.children()
        assert set(children) == {"layers", "act"}
        assert children["layers"].unwrap()[0].unwrap() is module.layers[0]

    def test_children_when_no_sub_modules_is_empty(self):
        assert len(linear().children()) == 0

    def test_leaf_modules_when_nested_descends_to_leaves(self):
        root = Net(linear=linear())
        outer = MLP(layers=[linear()], act=ReLU())
        leaves = dict(outer.leaf_modules().flattened())
        assert set(leaves) == {"layers.0", "act"}
        assert dict(root.leaf_modules().flattened())["linear"] is root.linear

    def test_trainable_parameters_when_nothing_frozen_equals_parameters(self):
        module = mlp()
        assert module.trainable_parameters() == module.parameters()


class TestPartition:

    @pytest.mark.parametrize(
        "make",
        [
            lambda: Net(linear=linear()),
            mlp,
            lambda: Heads(heads={"a": linear(), "b": linear()}, scale=np.ones(2)),
        ],
    )
    def test_local_items_when_classified_partition_into_kinds(self, make):
        module = make()
        all_keys = {k for k, _ in module.filter_map(filter_all, is_leaf=lambda m, k, v: v.is_value).flattened()}
        local = {k for k, _ in module.filter_map(filter_local_parameters).flattened()}
        children = {k for k, _ in module.children().flattened()}
        other = {k for k, _ in module.filter_map(filter_other).flattened()}
        assert not (local & children)
        assert not (local & other)
        assert not (children & other)
        assert local | children | other == all_keys


class TestDescribe:

    def test_describe_extra_when_float_attribute_renders_it(self):
        root = Net(linear=Linear(weight=np.zeros((4, 2))))
        assert "eps=1e-05" in root.describe_extra()

    def test_describe_extra_when_no_opaque_attributes_is_empty(self):
        assert linear().describe_extra() == ""

    def test_description_when_no_children_is_type_name(self):
        assert ReLU().description() == "ReLU"

    def test_description_when_children_lists_them(self):
        root = Net(linear=linear())
        assert root.description() == "Net(eps=1e-05) {\n  linear: Linear,\n}"

    def test_description_when_list_of_children_renders_block(self):
        module = MLP(layers=[linear()], act=ReLU())
        assert str(module) == (
            "MLP(name=mlp) {\n"
            "  act: ReLU,\n"
            "  layers: [\n"
            "    Linear,\n"
            "  ],\n"
            "}"
        )

    def test_description_when_indent_configured_uses_it(self):
        root = Net(linear=linear())
        with use_config(ModtreeConfig(Describe=DescribeConfig(indent=4))):
            assert root.description() == "Net(eps=1e-05) {\n    linear: Linear,\n}"


class TestTrain:

    def test_train_when_false_sets_every_module(self):
        module = mlp()
        module.train(False)
        assert not module.training
        assert not module.layers[1].training
        assert not module.act.training

    def test_eval_when_called_returns_self(self):
        module = mlp()
        assert module.eval() is module
        assert module.train().training


class TestVisit:

    def test_visit_when_nested_reaches_every_module_once(self):
        module = mlp()
        paths = sorted(k for k, _ in module.named_modules())
        assert paths == ["", "act", "layers.0", "layers.1"]

    def test_named_modules_when_root_has_empty_path(self):
        module = mlp()
        named = dict(module.named_modules())
        assert named[""] is module
        assert named["layers.1"] is module.layers[1]

    def test_modules_when_called_includes_root(self):
        module = Net(linear=linear())
        modules = module.modules()
        assert len(modules) == 2
        assert any(m is module.linear for m in modules)

    def test_visit_when_nested_deeper_builds_dotted_paths(self):
        class Outer(Module):
            inner: Net

        module = Outer(inner=Net(linear=linear()))
        paths = sorted(k for k, _ in module.named_modules())
        assert paths == ["", "inner", "inner.linear"]
