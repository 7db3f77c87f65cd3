"""Tests for configuration loading."""

from pathlib import Path

import pytest

from fslc.compiler.errors import ConfigError
from fslc.compiler.models import Platform
from fslc.config import Config, config_from_dict, load_config, parse_platforms

CONFIG_TEXT = """\
platforms: [vulkan, macos]
include_dirs: [shaders/include]
output_dir: build/generated
jobs: 4
compile: false
graphics_root_signature: SceneRootSignature
compilers:
  dxc: /opt/dxc/bin/dxc
reload:
  port: 7000
  queue_timeout: 2
projects:
  demo:
    files: [shaders/basic.fsl]
    platforms: android_vulkan
"""


class TestParsePlatforms:
    """Test platform name parsing."""

    def test_names_are_case_insensitive(self):
        assert parse_platforms(["vulkan", "IOS"]) == [Platform.VULKAN, Platform.IOS]

    def test_comma_separated(self):
        assert parse_platforms("direct3d12, vulkan,vulkan") == [
            Platform.DIRECT3D12,
            Platform.VULKAN,
        ]

    def test_all(self):
        assert parse_platforms("all") == list(Platform)

    def test_unknown(self):
        with pytest.raises(ConfigError, match="unknown platform 'opengl'"):
            parse_platforms(["opengl"])


class TestLoadConfig:
    """Test reading fslc.yaml."""

    def test_load(self, tmp_path):
        path = tmp_path / "fslc.yaml"
        path.write_text(CONFIG_TEXT)

        config = load_config(path)

        assert config.source == path
        assert config.platforms == [Platform.VULKAN, Platform.MACOS]
        assert config.jobs == 4
        assert config.compile is False
        assert config.compilers == {"dxc": "/opt/dxc/bin/dxc"}
        assert config.reload.port == 7000
        assert config.reload.queue_timeout == 2.0
        assert config.reload.host == "127.0.0.1"
        assert config.root_signatures.graphics == "SceneRootSignature"
        assert config.root_signatures.compute == "ComputeRootSignature"

    def test_relative_paths_follow_the_file(self, tmp_path):
        path = tmp_path / "project" / "fslc.yaml"
        path.parent.mkdir()
        path.write_text(CONFIG_TEXT)

        config = load_config(path)
        base = path.resolve().parent

        assert config.output_dir == base / "build" / "generated"
        assert config.include_dirs == [base / "shaders" / "include"]
        assert config.projects["demo"].files == [base / "shaders" / "basic.fsl"]
        assert config.projects["demo"].platforms == [Platform.ANDROID_VULKAN]
        assert config.binary_dir == Path("out/bin")

    def test_default_without_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        config = load_config()

        assert config == Config()

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigError, match="cannot read configuration file"):
            load_config(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "fslc.yaml"
        path.write_text("platforms: [vulkan\n")

        with pytest.raises(ConfigError, match="invalid YAML"):
            load_config(path)

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "fslc.yaml"
        path.write_text("- vulkan\n")

        with pytest.raises(ConfigError, match="mapping at the top level"):
            load_config(path)


@pytest.mark.parametrize(
    "data,message",
    [
        ({"platform": ["vulkan"]}, "unknown configuration key"),
        ({"jobs": "4"}, "'jobs' must be a int"),
        ({"jobs": 0}, "at least 1"),
        ({"compile": "yes"}, "'compile' must be a bool"),
        ({"compilers": {"fxc": "fxc"}}, "unknown compiler"),
        ({"reload": {"address": "x"}}, "unknown reload setting"),
        ({"projects": {"demo": ["a.fsl"]}}, "'projects.demo' must be a dict"),
    ],
)
def test_invalid_values(data, message, tmp_path):
    with pytest.raises(ConfigError, match=message):
        config_from_dict(data, tmp_path)


class TestOverrides:
    """Test command-line overrides on top of the file."""

    def test_none_is_ignored(self):
        config = Config(jobs=3).with_overrides(jobs=None, debug=True)

        assert config.jobs == 3
        assert config.debug is True

    def test_conversions(self):
        config = Config().with_overrides(
            platforms="direct3d12,ios",
            output_dir="gen",
            include_dirs=["a", "b"],
        )

        assert config.platforms == [Platform.DIRECT3D12, Platform.IOS]
        assert config.output_dir == Path("gen")
        assert config.include_dirs == [Path("a"), Path("b")]

    def test_unknown_override(self):
        with pytest.raises(ConfigError, match="unknown configuration option"):
            Config().with_overrides(colour=True)

    def test_build_options(self, tmp_path):
        options = Config(cache_dir=tmp_path, jobs=2).build_options(incremental=True)

        assert options.cache_dir == tmp_path
        assert options.jobs == 2
        assert options.incremental is True
        assert options.root_signatures.graphics == "DefaultRootSignature"
