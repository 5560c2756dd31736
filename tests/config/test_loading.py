import pytest

from modtree.config._models import ModtreeConfig


class TestYamlLoading:
    def test_load_from_yaml(self, tmp_path):
        yaml_file = tmp_path / "modtree.yaml"
        yaml_file.write_text("Tensor:\n  casting: unsafe\n")

        class FileConfig(ModtreeConfig):
            model_config = {**ModtreeConfig.model_config, "yaml_file": str(yaml_file)}

        config = FileConfig(_env_file=None)
        assert config.Tensor.casting == "unsafe"
        assert config.Tensor.strict_shapes is True

    def test_missing_yaml_uses_defaults(self):
        config = ModtreeConfig(_env_file=None)
        assert config.Tensor.casting == "same_kind"
        assert config.Describe.indent == 2


class TestEnvVarLoading:
    def test_env_var_override(self, monkeypatch):
        monkeypatch.setenv("MODTREE_TENSOR__STRICT_SHAPES", "false")

        config = ModtreeConfig(_env_file=None)
        assert config.Tensor.strict_shapes is False

    def test_precedence_order(self, tmp_path, monkeypatch):
        yaml_file = tmp_path / "modtree.yaml"
        yaml_file.write_text("Describe:\n  indent: 8\n")
        monkeypatch.setenv("MODTREE_DESCRIBE__INDENT", "4")

        class FileConfig(ModtreeConfig):
            model_config = {**ModtreeConfig.model_config, "yaml_file": str(yaml_file)}

        config = FileConfig(_env_file=None)
        assert config.Describe.indent == 4
