"""Waiting for node containers to come up."""

import ipaddress
import time
from collections.abc import Callable

from kubedee.exceptions import NodeUnresponsiveError
from kubedee.logging_config import get_logger
from kubedee.lxd import STATUS_CODE_RUNNING, ContainerAdmin

logger = get_logger(__name__)


def wait_running(
    containers: ContainerAdmin,
    name: str,
    interval: float = 3.0,
    timeout: float = 300.0,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> ipaddress.IPv4Address:
    """Block until a container is running and has an IPv4 address on eth0.

    Args:
        containers: Driver used to query container state
        name: Container name
        interval: Seconds between polls
        timeout: Seconds before giving up, counted across both phases
        sleep: Sleep function, replaceable in tests
        clock: Monotonic clock, replaceable in tests

    Returns:
        The container's IPv4 address

    Raises:
        NodeUnresponsiveError: If the container is not ready within the timeout
    """
    deadline = clock() + timeout

    while containers.status_code(name) != STATUS_CODE_RUNNING:
        if clock() >= deadline:
            raise NodeUnresponsiveError(
                f"{name} did not reach state running within {timeout:g} seconds",
                "Check the container with: lxc info " + name,
            )
        logger.info(f"Waiting for {name} to reach state running ...")
        sleep(interval)

    while True:
        address = containers.ipv4_address(name)
        if address:
            logger.debug(f"{name} is running with address {address}")
            return ipaddress.IPv4Address(address)
        if clock() >= deadline:
            raise NodeUnresponsiveError(
                f"{name} did not get an IPv4 address within {timeout:g} seconds",
                "Check the network with: lxc network list",
            )
        logger.info(f"Waiting for {name} to get IPv4 address ...")
        sleep(interval)


def wait_for(
    check: Callable[[], bool],
    description: str,
    interval: float = 3.0,
    timeout: float = 300.0,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """Poll ``check`` until it returns True.

    Raises:
        NodeUnresponsiveError: If the check does not pass within the timeout
    """
    deadline = clock() + timeout
    while not check():
        if clock() >= deadline:
            raise NodeUnresponsiveError(f"Timed out after {timeout:g} seconds waiting for {description}")
        logger.info(f"Waiting for {description} ...")
        sleep(interval)
