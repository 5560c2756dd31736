from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict, YamlConfigSettingsSource


class TensorConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    casting: Literal["no", "equiv", "safe", "same_kind", "unsafe"] = "same_kind"
    strict_shapes: bool = True


class UpdateConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    warn_unused_keys: bool = True


class DescribeConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    indent: int = Field(default=2, ge=0)


class ModtreeConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MODTREE_",
        env_nested_delimiter="__",
        yaml_file=[
            "modtree.yaml",
            "modtree.yml",
            ".modtree.yaml",
            "~/.config/modtree/config.yaml",
        ],
        frozen=True,
    )

    Tensor: TensorConfig = Field(default_factory=TensorConfig)
    Update: UpdateConfig = Field(default_factory=UpdateConfig)
    Describe: DescribeConfig = Field(default_factory=DescribeConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        yaml_file = settings_cls.model_config.get("yaml_file")
        yaml_settings = YamlConfigSettingsSource(settings_cls, yaml_file=yaml_file)
        return (
            init_settings,
            env_settings,
            yaml_settings,
            dotenv_settings,
            file_secret_settings,
        )
