"""Data models for cached third-party artifacts."""

from enum import Enum

from pydantic import BaseModel, Field, field_validator


class ArchiveKind(str, Enum):
    """How a downloaded artifact is unpacked."""

    TAR = "tar"
    BINARY = "binary"


class CachedArtifact(BaseModel):
    """A third-party release cached once per (tool, version)."""

    tool: str
    version: str
    url: str
    kind: ArchiveKind = ArchiveKind.TAR
    strip_components: int = 0
    files: list[str] = Field(default_factory=list)
    # Keep every regular file of the archive, not just the expected ones
    include_all: bool = False
    # Raw binaries are renamed to files[0] once downloaded
    executable: bool = True

    @field_validator("files")
    @classmethod
    def validate_files(cls, v: list[str]) -> list[str]:
        """Validate the expected file set is non-empty and flat."""
        if not v:
            raise ValueError("files cannot be empty")
        for name in v:
            if "/" in name or name in (".", ".."):
                raise ValueError(f"expected file '{name}' must be a plain file name")
        return v

    @property
    def download_url(self) -> str:
        return self.url.format(version=self.version)

    @property
    def archive_name(self) -> str:
        return self.download_url.rsplit("/", 1)[-1]

    def __str__(self) -> str:
        return f"{self.tool} {self.version}"


def etcd_artifact(version: str) -> CachedArtifact:
    return CachedArtifact(
        tool="etcd",
        version=version,
        url=(
            "https://github.com/coreos/etcd/releases/download/"
            "{version}/etcd-{version}-linux-amd64.tar.gz"
        ),
        strip_components=1,
        files=["etcd", "etcdctl"],
    )


def crio_artifact(version: str) -> CachedArtifact:
    return CachedArtifact(
        tool="crio",
        version=version,
        url="https://files.schu.io/pub/cri-o/crio-amd64-{version}.tar.gz",
        files=[
            "crio",
            "conmon",
            "pause",
            "seccomp.json",
            "crio.conf",
            "crictl.yaml",
            "crio-umount.conf",
            "policy.json",
        ],
    )


def runc_artifact(version: str) -> CachedArtifact:
    return CachedArtifact(
        tool="runc",
        version=version,
        url="https://github.com/opencontainers/runc/releases/download/{version}/runc.amd64",
        kind=ArchiveKind.BINARY,
        files=["runc"],
    )


def cni_plugins_artifact(version: str) -> CachedArtifact:
    return CachedArtifact(
        tool="cni-plugins",
        version=version,
        url=(
            "https://github.com/containernetworking/plugins/releases/download/"
            "{version}/cni-plugins-amd64-{version}.tgz"
        ),
        files=["bridge", "flannel", "host-local", "loopback", "portmap"],
        include_all=True,
    )
