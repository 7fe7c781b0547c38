"""LXD access through the lxc command line client.

The orchestrator only depends on the narrow capability protocols defined
here. ``LXDClient`` implements all of them on top of ``lxc``; tests use an
in-memory double.
"""

import json
import subprocess
from pathlib import Path
from typing import Protocol, runtime_checkable

from kubedee.exceptions import LXDError
from kubedee.logging_config import get_logger

logger = get_logger(__name__)

STATUS_CODE_RUNNING = 103


@runtime_checkable
class NetworkAdmin(Protocol):
    def network_exists(self, name: str) -> bool: ...

    def create_network(self, name: str) -> None: ...

    def delete_network(self, name: str) -> None: ...


@runtime_checkable
class StorageAdmin(Protocol):
    def storage_pool_exists(self, name: str) -> bool: ...

    def create_storage_pool(self, name: str, driver: str) -> None: ...


@runtime_checkable
class ContainerAdmin(Protocol):
    def container_exists(self, name: str) -> bool: ...

    def launch(
        self,
        image: str,
        name: str,
        storage: str,
        network: str,
        config: dict[str, str] | None = None,
        profiles: list[str] | None = None,
    ) -> None: ...

    def exec(self, name: str, command: list[str], stdin: str | None = None) -> str: ...

    def push_file(self, name: str, source: Path, target: str) -> None: ...

    def add_disk_device(self, name: str, device: str, source: Path, path: str) -> None: ...

    def status_code(self, name: str) -> int | None: ...

    def ipv4_address(self, name: str) -> str | None: ...

    def list_containers(self) -> list[str]: ...

    def delete(self, name: str, force: bool = True) -> None: ...

    def snapshot(self, name: str, snapshot: str) -> None: ...


@runtime_checkable
class ImageAdmin(Protocol):
    def list_image_aliases(self) -> list[str]: ...

    def image_exists(self, alias: str) -> bool: ...

    def delete_image(self, alias: str) -> None: ...

    def publish(self, source: str, alias: str, properties: dict[str, str] | None = None) -> None: ...


class Driver(NetworkAdmin, StorageAdmin, ContainerAdmin, ImageAdmin, Protocol):
    """Everything the orchestrator needs from the virtualization backend."""


class LXDClient:
    """Driver implementation shelling out to ``lxc``."""

    def __init__(self, binary: str = "lxc", timeout: float | None = 600):
        """Initialize the client.

        Args:
            binary: Name or path of the lxc client
            timeout: Seconds before a single lxc invocation is aborted
        """
        self.binary = binary
        self.timeout = timeout

    def _run(self, args: list[str], stdin: str | None = None, check: bool = True) -> subprocess.CompletedProcess:
        command = [self.binary, *args]
        logger.debug(f"Running: {' '.join(command)}")
        try:
            result = subprocess.run(
                command,
                input=stdin,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            raise LXDError(command, 127, f"'{self.binary}' not found. Install LXD and make sure lxc is in PATH")
        except subprocess.TimeoutExpired:
            raise LXDError(command, -1, f"timed out after {self.timeout} seconds")

        if check and result.returncode != 0:
            logger.debug(f"Command failed with return code {result.returncode}: {result.stderr}")
            raise LXDError(command, result.returncode, result.stderr)
        return result

    def _succeeds(self, args: list[str]) -> bool:
        return self._run(args, check=False).returncode == 0

    def _list(self) -> list[dict]:
        output = self._run(["list", "--format", "json"]).stdout
        try:
            return json.loads(output or "[]")
        except json.JSONDecodeError as e:
            raise LXDError([self.binary, "list", "--format", "json"], 0, f"invalid JSON output: {e}")

    def _container_info(self, name: str) -> dict | None:
        return next((c for c in self._list() if c.get("name") == name), None)

    # Networks

    def network_exists(self, name: str) -> bool:
        return self._succeeds(["network", "show", name])

    def create_network(self, name: str) -> None:
        self._run(["network", "create", name])

    def delete_network(self, name: str) -> None:
        self._run(["network", "delete", name])

    # Storage

    def storage_pool_exists(self, name: str) -> bool:
        return self._succeeds(["storage", "show", name])

    def create_storage_pool(self, name: str, driver: str) -> None:
        self._run(["storage", "create", name, driver])

    # Containers

    def container_exists(self, name: str) -> bool:
        return self._succeeds(["info", name])

    def launch(
        self,
        image: str,
        name: str,
        storage: str,
        network: str,
        config: dict[str, str] | None = None,
        profiles: list[str] | None = None,
    ) -> None:
        args = ["launch", "--storage", storage, "--network", network]
        for profile in profiles or []:
            args += ["--profile", profile]
        for key, value in (config or {}).items():
            args += ["--config", f"{key}={value}"]
        self._run([*args, image, name])

    def exec(self, name: str, command: list[str], stdin: str | None = None) -> str:
        return self._run(["exec", name, "--", *command], stdin=stdin).stdout

    def push_file(self, name: str, source: Path, target: str) -> None:
        self._run(["file", "push", "-p", str(source), f"{name}/{target.lstrip('/')}"])

    def has_device(self, name: str, device: str) -> bool:
        output = self._run(["config", "device", "list", name]).stdout
        return device in output.split()

    def add_disk_device(self, name: str, device: str, source: Path, path: str) -> None:
        if self.has_device(name, device):
            logger.debug(f"Device {device} already attached to {name}")
            return
        self._run(["config", "device", "add", name, device, "disk", f"source={source}", f"path={path}"])

    def status_code(self, name: str) -> int | None:
        info = self._container_info(name)
        if info is None:
            return None
        return (info.get("state") or {}).get("status_code")

    def ipv4_address(self, name: str) -> str | None:
        info = self._container_info(name)
        if info is None:
            return None
        network = (info.get("state") or {}).get("network") or {}
        for address in (network.get("eth0") or {}).get("addresses") or []:
            if address.get("family") == "inet" and address.get("address"):
                return address["address"]
        return None

    def list_containers(self) -> list[str]:
        return [c["name"] for c in self._list() if c.get("name")]

    def delete(self, name: str, force: bool = True) -> None:
        self._run(["delete", *(["-f"] if force else []), name])

    def snapshot(self, name: str, snapshot: str) -> None:
        self._run(["snapshot", name, snapshot])

    # Images

    def list_image_aliases(self) -> list[str]:
        output = self._run(["image", "list", "--format", "json"]).stdout
        try:
            images = json.loads(output or "[]")
        except json.JSONDecodeError as e:
            raise LXDError([self.binary, "image", "list"], 0, f"invalid JSON output: {e}")
        return [alias["name"] for image in images for alias in image.get("aliases") or []]

    def image_exists(self, alias: str) -> bool:
        return self._succeeds(["image", "info", alias])

    def delete_image(self, alias: str) -> None:
        self._run(["image", "delete", alias])

    def publish(self, source: str, alias: str, properties: dict[str, str] | None = None) -> None:
        props = [f"{key}={value}" for key, value in (properties or {}).items()]
        self._run(["publish", source, "--alias", alias, *props])
