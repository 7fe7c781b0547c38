"""Data models for cluster nodes."""

import re
import secrets
from enum import Enum

from pydantic import BaseModel, IPvAnyAddress, field_validator

from kubedee.models.cluster import NAME_PREFIX, ClusterName

SUFFIX_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"
SUFFIX_LENGTH = 5


class NodeRole(str, Enum):
    """Role a node plays in the cluster."""

    ETCD = "etcd"
    CONTROLLER = "controller"
    WORKER = "worker"


def random_suffix(length: int = SUFFIX_LENGTH) -> str:
    """Generate a random worker suffix."""
    return "".join(secrets.choice(SUFFIX_ALPHABET) for _ in range(length))


class Node(BaseModel):
    """A single node container of a cluster."""

    cluster: ClusterName
    role: NodeRole
    suffix: str | None = None
    ipv4: IPvAnyAddress | None = None

    @field_validator("suffix")
    @classmethod
    def validate_suffix(cls, v: str | None) -> str | None:
        """Validate the worker suffix is hostname-safe."""
        if v is not None and not re.fullmatch(rf"[a-z0-9]{{{SUFFIX_LENGTH}}}", v):
            raise ValueError(f"suffix '{v}' must be {SUFFIX_LENGTH} lowercase alphanumeric characters")
        return v

    @classmethod
    def etcd(cls, cluster: ClusterName) -> "Node":
        return cls(cluster=cluster, role=NodeRole.ETCD)

    @classmethod
    def controller(cls, cluster: ClusterName) -> "Node":
        return cls(cluster=cluster, role=NodeRole.CONTROLLER)

    @classmethod
    def worker(cls, cluster: ClusterName, suffix: str | None = None) -> "Node":
        return cls(cluster=cluster, role=NodeRole.WORKER, suffix=suffix or random_suffix())

    @property
    def container_name(self) -> str:
        """Container name: kubedee-<cluster>-<role>[-<suffix>]."""
        name = f"{NAME_PREFIX}-{self.cluster.value}-{self.role.value}"
        if self.suffix:
            name = f"{name}-{self.suffix}"
        return name

    def __str__(self) -> str:
        return self.container_name
