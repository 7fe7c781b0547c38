"""Data models for cluster identity and on-disk layout."""

import re
from pathlib import Path

from pydantic import BaseModel, ConfigDict, field_validator

NAME_PREFIX = "kubedee"

NORMALIZED_NAME_PATTERN = re.compile(r"[A-Za-z0-9-]{1,50}")


class ClusterName(BaseModel):
    """A validated cluster name.

    The same value derives the network name, every container name and the
    cluster directory, so it is immutable once built.
    """

    model_config = ConfigDict(frozen=True)

    raw: str
    value: str
    normalized: bool = False

    @field_validator("value")
    @classmethod
    def validate_value(cls, v: str) -> str:
        """Validate the value only contains hostname-safe characters."""
        if not NORMALIZED_NAME_PATTERN.fullmatch(v):
            raise ValueError(f"cluster name '{v}' must match '[[:alnum:]-]{{1,50}}'")
        return v

    @property
    def network(self) -> str:
        """Name of the cluster's LXD network."""
        return f"{NAME_PREFIX}-{self.value}"

    @property
    def container_prefix(self) -> str:
        """Prefix shared by every container of this cluster."""
        return f"{NAME_PREFIX}-{self.value}-"

    def __str__(self) -> str:
        return self.value


class ClusterPaths(BaseModel):
    """On-disk layout of a single cluster."""

    model_config = ConfigDict(frozen=True)

    root: Path

    @classmethod
    def for_cluster(cls, clusters_dir: Path, name: ClusterName) -> "ClusterPaths":
        return cls(root=Path(clusters_dir) / name.value)

    @property
    def rootfs(self) -> Path:
        return self.root / "rootfs"

    @property
    def certificates(self) -> Path:
        return self.root / "certificates"

    @property
    def kubeconfig(self) -> Path:
        return self.root / "kubeconfig"

    @property
    def bin_dir(self) -> Path:
        return self.rootfs / "usr" / "local" / "bin"

    @property
    def crio_libexec_dir(self) -> Path:
        return self.rootfs / "usr" / "local" / "libexec" / "crio"

    @property
    def crio_config_dir(self) -> Path:
        return self.rootfs / "etc" / "crio"

    @property
    def cni_bin_dir(self) -> Path:
        return self.rootfs / "opt" / "cni" / "bin"

    @property
    def admin_kubeconfig(self) -> Path:
        return self.kubeconfig / "admin.kubeconfig"

    def exists(self) -> bool:
        return self.root.exists()
