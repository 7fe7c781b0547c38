"""Tests for the artifact cache."""

import os

import pytest
import requests
from fakes import FakeSession, make_tarball
from filelock import FileLock

from kubedee import cache as cache_module
from kubedee.cache import ArtifactCache, link_or_copy
from kubedee.exceptions import CopyError, FetchError
from kubedee.models.artifact import cni_plugins_artifact, etcd_artifact, runc_artifact


@pytest.fixture
def etcd():
    return etcd_artifact("v3.2.12")


@pytest.fixture
def etcd_session(etcd):
    tarball = make_tarball(
        {"etcd": b"etcd", "etcdctl": b"etcdctl", "Documentation/README.md": b"docs"},
        prefix="etcd-v3.2.12-linux-amd64/",
    )
    return FakeSession({etcd.download_url: tarball})


@pytest.fixture
def cache(config, etcd_session):
    return ArtifactCache(config.cache_config(), session=etcd_session)


def test_ensure_downloads_once(cache, etcd, etcd_session):
    """A second ensure for the same (tool, version) performs no network I/O."""
    first = cache.ensure(etcd)
    second = cache.ensure(etcd)

    assert first == second
    assert len(etcd_session.requests) == 1
    assert {p.name for p in first} == {"etcd", "etcdctl"}
    assert all(p.read_bytes() == p.name.encode() for p in first)


def test_cache_directory_is_version_scoped(cache, etcd, config):
    paths = cache.ensure(etcd)

    expected_dir = config.data_dir / "cache" / config.version / "etcd" / "v3.2.12"
    assert {p.parent for p in paths} == {expected_dir}


def test_dirty_versions_share_cache(tmp_path):
    from kubedee.config import KubedeeConfig

    config = KubedeeConfig(data_dir=tmp_path, version="0.2.0-3-gabcdef-dirty")

    assert config.cache_config().cache_dir == tmp_path / "cache" / "dirty"
    assert config.worker_image == "kubedee-image-worker-dirty"


def test_missing_file_triggers_full_refetch(cache, etcd, etcd_session):
    """Deleting one expected file re-fetches the whole artifact."""
    paths = cache.ensure(etcd)
    etcdctl = next(p for p in paths if p.name == "etcdctl")
    etcd_binary = next(p for p in paths if p.name == "etcd")
    etcdctl.unlink()
    inode_before = etcd_binary.stat().st_ino

    cache.ensure(etcd)

    assert len(etcd_session.requests) == 2
    assert etcdctl.exists()
    # The untouched file was replaced too, not patched around
    assert etcd_binary.stat().st_ino != inode_before


def test_strip_components_skips_subdirectories(cache, etcd):
    cache.ensure(etcd)

    cache_dir = cache.artifact_dir(etcd)
    assert sorted(p.name for p in cache_dir.iterdir()) == ["etcd", "etcdctl"]


def test_http_error_raises_fetch_error(config, etcd, monkeypatch, tmp_path):
    session = FakeSession({})
    cache = ArtifactCache(config.cache_config(), session=session)
    monkeypatch.setattr("tempfile.tempdir", str(tmp_path))

    with pytest.raises(FetchError) as exc_info:
        cache.ensure(etcd)

    assert "etcd v3.2.12" in exc_info.value.message
    assert not cache.is_cached(etcd)
    # Temporary working directories are always removed
    assert not [p for p in tmp_path.iterdir() if p.name.startswith("kubedee-")]


def test_connection_error_raises_fetch_error(config, etcd):
    session = FakeSession({})
    session.fail_with = requests.ConnectionError("connection refused")
    cache = ArtifactCache(config.cache_config(), session=session)

    with pytest.raises(FetchError) as exc_info:
        cache.ensure(etcd)

    assert "connection refused" in exc_info.value.details


def test_corrupt_archive_raises_fetch_error(config, etcd):
    session = FakeSession({etcd.download_url: b"this is not a tarball"})
    cache = ArtifactCache(config.cache_config(), session=session)

    with pytest.raises(FetchError):
        cache.ensure(etcd)
    assert not cache.is_cached(etcd)


def test_archive_missing_expected_file(config, etcd):
    session = FakeSession(
        {etcd.download_url: make_tarball({"etcd": b"etcd"}, prefix="etcd-v3.2.12-linux-amd64/")}
    )
    cache = ArtifactCache(config.cache_config(), session=session)

    with pytest.raises(FetchError) as exc_info:
        cache.ensure(etcd)

    assert "etcdctl" in exc_info.value.details
    assert not cache.is_cached(etcd)


def test_retry_after_failure_succeeds(config, etcd, etcd_session):
    good = etcd_session.routes[etcd.download_url]
    etcd_session.routes[etcd.download_url] = b"garbage"
    cache = ArtifactCache(config.cache_config(), session=etcd_session)

    with pytest.raises(FetchError):
        cache.ensure(etcd)

    etcd_session.routes[etcd.download_url] = good
    assert {p.name for p in cache.ensure(etcd)} == {"etcd", "etcdctl"}


def test_lock_timeout_raises_fetch_error(config, etcd, etcd_session):
    """A fetch of the same artifact held by another process times out cleanly."""
    lock_dir = config.cache_config().lock_dir
    lock_dir.mkdir(parents=True)
    cache = ArtifactCache(config.cache_config(), session=etcd_session, lock_timeout=0.05)

    with FileLock(str(lock_dir / "cache-etcd-v3.2.12.lock")):
        with pytest.raises(FetchError) as exc_info:
            cache.ensure(etcd)

    assert "Timed out" in exc_info.value.message
    assert etcd_session.requests == []
    assert not cache.is_cached(etcd)


def test_no_download_when_filled_while_waiting(config, etcd, etcd_session, monkeypatch):
    """The cache is re-checked after the lock is taken."""
    other = ArtifactCache(config.cache_config(), session=FakeSession(dict(etcd_session.routes)))

    class FilledByOtherProcess:
        def __init__(self, path, timeout):
            self.path = path

        def __enter__(self):
            other.ensure(etcd)
            return self

        def __exit__(self, *exc_info):
            return False

    monkeypatch.setattr(cache_module, "FileLock", FilledByOtherProcess)
    cache = ArtifactCache(config.cache_config(), session=etcd_session)

    paths = cache.ensure(etcd)

    assert etcd_session.requests == []
    assert {p.name for p in paths} == {"etcd", "etcdctl"}


def test_raw_binary_is_renamed_and_executable(config):
    runc = runc_artifact("v1.0.0-rc4")
    cache = ArtifactCache(config.cache_config(), session=FakeSession({runc.download_url: b"runc"}))

    (path,) = cache.ensure(runc)

    assert path.name == "runc"
    assert os.access(path, os.X_OK)


def test_include_all_keeps_every_file(config):
    cni = cni_plugins_artifact("v0.6.0")
    files = {name: name.encode() for name in ["bridge", "flannel", "host-local", "loopback", "portmap", "ptp"]}
    cache = ArtifactCache(config.cache_config(), session=FakeSession({cni.download_url: make_tarball(files, "./")}))

    cache.ensure(cni)

    assert sorted(p.name for p in cache.artifact_dir(cni).iterdir()) == sorted(files)


def test_stage_links_into_target(cache, etcd, tmp_path):
    cache.ensure(etcd)
    target = tmp_path / "rootfs" / "usr" / "local" / "bin"

    cache.stage(etcd, target, ["etcd"])

    assert (target / "etcd").read_bytes() == b"etcd"
    assert not (target / "etcdctl").exists()


def test_stage_missing_file_raises_copy_error(cache, etcd, tmp_path):
    cache.ensure(etcd)

    with pytest.raises(CopyError) as exc_info:
        cache.stage(etcd, tmp_path / "target", ["etcd", "nope"])

    assert "nope" in exc_info.value.message


def test_link_or_copy_falls_back_to_copy(tmp_path, monkeypatch):
    source = tmp_path / "source"
    source.write_text("data")
    target = tmp_path / "target"

    def no_link(*args):
        raise OSError("Invalid cross-device link")

    monkeypatch.setattr(os, "link", no_link)
    link_or_copy(source, target)

    assert target.read_text() == "data"
    assert target.stat().st_ino != source.stat().st_ino
