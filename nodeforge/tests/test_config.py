import pytest
import yaml

from nodeforge import config as config_module
from nodeforge.config import NodeforgeConfig, get_config, set_config
from nodeforge.errors import ConfigurationError


@pytest.fixture(autouse=True)
def no_default_files(monkeypatch, tmp_path):
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATHS", [tmp_path / "absent.yaml"])
    for env in config_module.ENV_OVERRIDES:
        monkeypatch.delenv(env, raising=False)


def test_defaults():
    config = NodeforgeConfig.load()
    assert config.paths.registry_config_dir == "/etc/containerd/certs.d"
    assert config.paths.containerd_socket == "/run/containerd/containerd.sock"
    assert config.logging.level == "INFO"


def test_load_yaml_file(tmp_path):
    path = tmp_path / "nodeforge.yaml"
    path.write_text(yaml.safe_dump({
        "paths": {"manifest_dir": "/opt/cni"},
        "registry": {"package_mirror": "https://mirror.example.com/pkgs"},
        "logging": {"level": "debug"},
    }))
    config = NodeforgeConfig.load(path)
    assert config.paths.manifest_dir == "/opt/cni"
    assert config.registry.package_mirror == "https://mirror.example.com/pkgs"
    assert config.logging.level == "DEBUG"


def test_env_overrides_file(tmp_path, monkeypatch):
    path = tmp_path / "nodeforge.yaml"
    path.write_text(yaml.safe_dump({"registry": {"repo_mirror": "from-file"}}))
    monkeypatch.setenv("NODEFORGE_REPO_MIRROR", "from-env")
    monkeypatch.setenv("NODEFORGE_DOWNLOAD_TIMEOUT", "30")
    config = NodeforgeConfig.load(path)
    assert config.registry.repo_mirror == "from-env"
    assert config.registry.download_timeout == 30


def test_explicit_missing_file(tmp_path):
    with pytest.raises(ConfigurationError):
        NodeforgeConfig.load(tmp_path / "missing.yaml")


def test_invalid_level(monkeypatch):
    monkeypatch.setenv("NODEFORGE_LOG_LEVEL", "chatty")
    with pytest.raises(ConfigurationError):
        NodeforgeConfig.load()


def test_non_mapping_file(tmp_path):
    path = tmp_path / "nodeforge.yaml"
    path.write_text("- a\n- b\n")
    with pytest.raises(ConfigurationError):
        NodeforgeConfig.load(path)


def test_save_and_reload(tmp_path):
    config = NodeforgeConfig.load()
    config.paths.manifest_dir = "/srv/cni"
    path = tmp_path / "saved" / "nodeforge.yaml"
    config.save(path)
    assert NodeforgeConfig.load(path).paths.manifest_dir == "/srv/cni"


def test_get_config_is_cached():
    first = get_config()
    assert get_config() is first
    set_config(None)
    assert get_config() is not first
