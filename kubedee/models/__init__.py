"""Data models for clusters, nodes, artifacts and certificates."""

from kubedee.models.artifact import ArchiveKind, CachedArtifact
from kubedee.models.certificate import LeafSpec
from kubedee.models.cluster import ClusterName, ClusterPaths
from kubedee.models.node import Node, NodeRole

__all__ = [
    "ArchiveKind",
    "CachedArtifact",
    "ClusterName",
    "ClusterPaths",
    "LeafSpec",
    "Node",
    "NodeRole",
]
