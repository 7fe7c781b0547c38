"""Explicit configuration for kubedee components.

Everything that used to be process-wide state (data directory, cache
directory, worker image alias derived from the version) is computed here and
handed to each component at construction.
"""

import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from kubedee import __version__
from kubedee.exceptions import ConfigurationError

DEFAULT_DATA_DIR = Path("~/.local/share/kubedee").expanduser()
WORKER_IMAGE_PREFIX = "kubedee-image-worker-"

ENV_DATA_DIR = "KUBEDEE_DIR"
ENV_K8S_BIN_DIR = "KUBEDEE_K8S_BIN_DIR"
ENV_DEBUG = "KUBEDEE_DEBUG"

_TRUTHY = {"1", "true", "yes", "on"}


class CacheConfig(BaseModel):
    """Locations used by the artifact cache."""

    model_config = ConfigDict(frozen=True)

    cache_dir: Path
    lock_dir: Path


class ClusterStoreConfig(BaseModel):
    """Locations used for per-cluster state."""

    model_config = ConfigDict(frozen=True)

    clusters_dir: Path


class KubedeeConfig(BaseModel):
    """kubedee configuration."""

    data_dir: Path = DEFAULT_DATA_DIR
    version: str = __version__
    k8s_bin_dir: Path | None = None
    debug: bool = False

    container_image: str = "ubuntu:16.04"
    storage_pool: str = "kubedee"
    storage_driver: str = "btrfs"

    poll_interval: float = 3.0
    wait_timeout: float = 300.0

    etcd_version: str = "v3.2.12"
    crio_version: str = "v1.9.0"
    runc_version: str = "v1.0.0-rc4"
    cni_plugins_version: str = "v0.6.0"

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Validate version is usable in an image alias."""
        if not v:
            raise ValueError("version cannot be empty")
        if not re.match(r"^[A-Za-z0-9.+_-]+$", v):
            raise ValueError(f"version '{v}' contains characters not allowed in an image alias")
        return v

    @field_validator("poll_interval", "wait_timeout")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        """Validate polling settings are positive."""
        if v <= 0:
            raise ValueError("polling settings must be positive")
        return v

    @field_validator("data_dir", "k8s_bin_dir")
    @classmethod
    def expand_home(cls, v: Path | None) -> Path | None:
        return v.expanduser() if v else v

    @property
    def is_dirty(self) -> bool:
        return self.version.endswith("-dirty")

    @property
    def cache_key(self) -> str:
        """Cache subdirectory; every dirty build shares one."""
        return "dirty" if self.is_dirty else self.version

    @property
    def worker_image(self) -> str:
        """Alias of the worker image for this version."""
        return f"{WORKER_IMAGE_PREFIX}{self.cache_key}"

    def cache_config(self) -> CacheConfig:
        return CacheConfig(
            cache_dir=self.data_dir / "cache" / self.cache_key,
            lock_dir=self.data_dir / "locks",
        )

    def store_config(self) -> ClusterStoreConfig:
        return ClusterStoreConfig(clusters_dir=self.data_dir / "clusters")

    def resolve_bin_dir(self, bin_dir: str | Path | None = None) -> Path:
        """Pick the Kubernetes binary source directory.

        An explicit argument wins, then the configured override, then
        ``./_output/bin`` relative to the working directory.
        """
        if bin_dir:
            return Path(bin_dir)
        if self.k8s_bin_dir:
            return self.k8s_bin_dir
        return Path.cwd() / "_output" / "bin"

    @classmethod
    def from_env(
        cls, environ: dict[str, str] | None = None, base: "KubedeeConfig | None" = None, **overrides
    ) -> "KubedeeConfig":
        """Build configuration from environment variables.

        Precedence, lowest first: defaults, ``base`` (usually loaded from a
        config file), the environment, then explicit non-None overrides.
        """
        environ = os.environ if environ is None else environ
        values = base.model_dump(exclude_unset=True) if base else {}
        if environ.get(ENV_DATA_DIR):
            values["data_dir"] = Path(environ[ENV_DATA_DIR]).expanduser()
        if environ.get(ENV_K8S_BIN_DIR):
            values["k8s_bin_dir"] = Path(environ[ENV_K8S_BIN_DIR]).expanduser()
        if environ.get(ENV_DEBUG, "").lower() in _TRUTHY:
            values["debug"] = True
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    @classmethod
    def load(cls, path: str | Path) -> "KubedeeConfig":
        """Load configuration from YAML file.

        Raises:
            ConfigurationError: If the file cannot be read or holds invalid settings
        """
        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to read config file {path}", str(e))
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Invalid config file {path}", "Expected a mapping of settings")
        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid config file {path}", str(e))
