"""Data models for certificate subjects."""

import ipaddress

from pydantic import BaseModel, Field, field_validator

ORGANIZATIONAL_UNIT = "kubedee"


class LeafSpec(BaseModel):
    """Subject and SANs of a leaf certificate signed by the cluster CA."""

    basename: str
    common_name: str
    organization: str
    organizational_unit: str = ORGANIZATIONAL_UNIT
    hosts: list[str] = Field(default_factory=list)

    @field_validator("basename")
    @classmethod
    def validate_basename(cls, v: str) -> str:
        """Validate the basename is usable as a file name."""
        if not v or "/" in v or v.startswith("."):
            raise ValueError(f"basename '{v}' must be a plain file name")
        return v

    @property
    def ip_addresses(self) -> list[ipaddress.IPv4Address | ipaddress.IPv6Address]:
        result = []
        for host in self.hosts:
            try:
                result.append(ipaddress.ip_address(host))
            except ValueError:
                continue
        return result

    @property
    def dns_names(self) -> list[str]:
        result = []
        for host in self.hosts:
            try:
                ipaddress.ip_address(host)
            except ValueError:
                result.append(host)
        return result
