"""Tests for kubedee configuration."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from kubedee.config import DEFAULT_DATA_DIR, KubedeeConfig
from kubedee.exceptions import ConfigurationError


def test_defaults():
    config = KubedeeConfig()

    assert config.data_dir == DEFAULT_DATA_DIR
    assert config.container_image == "ubuntu:16.04"
    assert config.storage_pool == "kubedee"
    assert config.storage_driver == "btrfs"
    assert config.etcd_version == "v3.2.12"
    assert config.worker_image == "kubedee-image-worker-0.1.0"


def test_from_env():
    config = KubedeeConfig.from_env(
        {"KUBEDEE_DIR": "/srv/kubedee", "KUBEDEE_K8S_BIN_DIR": "/opt/k8s", "KUBEDEE_DEBUG": "true"}
    )

    assert config.data_dir == Path("/srv/kubedee")
    assert config.k8s_bin_dir == Path("/opt/k8s")
    assert config.debug


def test_overrides_win_over_env():
    config = KubedeeConfig.from_env({"KUBEDEE_DIR": "/srv/kubedee"}, data_dir=Path("/tmp/other"), version=None)

    assert config.data_dir == Path("/tmp/other")
    assert config.version == "0.1.0"


def test_empty_env_uses_defaults():
    config = KubedeeConfig.from_env({"KUBEDEE_DEBUG": "0"})

    assert config.data_dir == DEFAULT_DATA_DIR
    assert not config.debug


def test_directories(tmp_path):
    config = KubedeeConfig(data_dir=tmp_path, version="0.2.0")

    assert config.cache_config().cache_dir == tmp_path / "cache" / "0.2.0"
    assert config.cache_config().lock_dir == tmp_path / "locks"
    assert config.store_config().clusters_dir == tmp_path / "clusters"


def test_resolve_bin_dir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    assert KubedeeConfig().resolve_bin_dir() == tmp_path / "_output" / "bin"
    assert KubedeeConfig(k8s_bin_dir=Path("/opt/k8s")).resolve_bin_dir() == Path("/opt/k8s")
    assert KubedeeConfig(k8s_bin_dir=Path("/opt/k8s")).resolve_bin_dir("/src/bin") == Path("/src/bin")


@pytest.mark.parametrize("version", ["", "1.0 beta", "v1/2"])
def test_invalid_version(version):
    with pytest.raises(ValidationError):
        KubedeeConfig(version=version)


@pytest.mark.parametrize("field", ["poll_interval", "wait_timeout"])
def test_polling_must_be_positive(field):
    with pytest.raises(ValidationError):
        KubedeeConfig(**{field: 0})


def test_load(tmp_path):
    path = tmp_path / "kubedee.yaml"
    path.write_text(f"data_dir: {tmp_path / 'data'}\nwait_timeout: 120\nstorage_driver: dir\n")

    config = KubedeeConfig.load(path)

    assert config.data_dir == tmp_path / "data"
    assert config.wait_timeout == 120.0
    assert config.storage_driver == "dir"
    assert config.container_image == "ubuntu:16.04"


def test_load_empty_file(tmp_path):
    path = tmp_path / "kubedee.yaml"
    path.write_text("")

    assert KubedeeConfig.load(path) == KubedeeConfig()


def test_load_missing_file(tmp_path):
    with pytest.raises(ConfigurationError) as exc_info:
        KubedeeConfig.load(tmp_path / "missing.yaml")

    assert "missing.yaml" in exc_info.value.message


@pytest.mark.parametrize("content", ["- a\n- b\n", "wait_timeout: -1\n", "data_dir: [unclosed\n"])
def test_load_invalid_file(tmp_path, content):
    path = tmp_path / "kubedee.yaml"
    path.write_text(content)

    with pytest.raises(ConfigurationError):
        KubedeeConfig.load(path)


def test_env_wins_over_loaded_file(tmp_path):
    path = tmp_path / "kubedee.yaml"
    path.write_text("data_dir: /srv/from-file\nwait_timeout: 60\n")

    config = KubedeeConfig.from_env({"KUBEDEE_DIR": "/srv/from-env"}, base=KubedeeConfig.load(path))

    assert config.data_dir == Path("/srv/from-env")
    assert config.wait_timeout == 60.0
