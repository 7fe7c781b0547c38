"""Tests for error handling across components."""

import logging

from kubedee.exceptions import (
    AlreadyExistsError,
    CertificateError,
    ConfigurationError,
    CopyError,
    FetchError,
    ImagePublishError,
    InvalidNameError,
    KubedeeError,
    LXDError,
    NoAddressAssignedError,
    NodeUnresponsiveError,
    NotFoundError,
)
from kubedee.logging_config import LevelColorFormatter, get_logger, setup_logging


def test_custom_exception_with_details():
    """Test that custom exceptions support message and details."""
    error = FetchError("Failed to download etcd v3.2.12", "404 Client Error")

    assert error.message == "Failed to download etcd v3.2.12"
    assert error.details == "404 Client Error"
    assert "Failed to download etcd v3.2.12" in str(error)
    assert "404 Client Error" in str(error)


def test_custom_exception_without_details():
    """Test that custom exceptions work without details."""
    error = NotFoundError("Cluster demo not found")

    assert error.message == "Cluster demo not found"
    assert error.details is None
    assert str(error) == "Cluster demo not found"


def test_exception_hierarchy():
    """Test that all custom exceptions inherit from KubedeeError."""
    for error_type in (
        AlreadyExistsError,
        CertificateError,
        ConfigurationError,
        CopyError,
        FetchError,
        ImagePublishError,
        InvalidNameError,
        LXDError,
        NoAddressAssignedError,
        NodeUnresponsiveError,
        NotFoundError,
    ):
        assert issubclass(error_type, KubedeeError)


def test_lxd_error_context():
    """Test that lxc failures carry the command and its stderr."""
    error = LXDError(["lxc", "network", "create", "kubedee-demo"], 1, "Error: already exists\n")

    assert error.returncode == 1
    assert error.message == "Command 'lxc network create kubedee-demo' failed with return code 1"
    assert error.details == "Error: already exists"
    assert "Details:" in error.format_message()


def test_lxd_error_without_stderr():
    error = LXDError(["lxc", "list"], 2, "   ")

    assert error.details is None


def test_logging_setup():
    """Test that logging can be configured."""
    setup_logging(level="INFO", verbose=False)

    logger = get_logger("test")
    assert logger.name == "test"
    assert logging.getLogger().level == logging.INFO


def test_logging_with_verbose():
    """Test that verbose mode sets DEBUG level."""
    setup_logging(verbose=True)

    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("filelock").level == logging.WARNING


def test_logging_to_file(tmp_path):
    log_file = tmp_path / "logs" / "kubedee.log"
    setup_logging(log_file=log_file)

    get_logger("kubedee.test").info("Creating network kubedee-demo ...")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert "Creating network kubedee-demo ..." in log_file.read_text()


def test_log_file_captures_debug_records(tmp_path):
    log_file = tmp_path / "kubedee.log"
    setup_logging(log_file=log_file)

    get_logger("kubedee.test").debug("Reusing worker image kubedee-image-worker-0.1.0")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert "Reusing worker image" in log_file.read_text()
    console = logging.getLogger().handlers[0]
    assert console.level == logging.INFO


def test_level_color_formatter():
    formatter = LevelColorFormatter("%(levelname)s %(message)s")

    def render(level):
        return formatter.format(logging.LogRecord("kubedee", level, __file__, 1, "message", None, None))

    assert render(logging.WARNING) == "\033[1;33mWARNING message\033[0m"
    assert render(logging.ERROR).startswith("\033[1;31m")
    assert render(logging.INFO).startswith("\033[1;37m")


def test_console_uncolored_when_not_a_terminal():
    setup_logging()

    console = logging.getLogger().handlers[0]
    assert not isinstance(console.formatter, LevelColorFormatter)


def test_exception_can_be_caught_as_base_class():
    """Test that specific exceptions can be caught as KubedeeError."""
    try:
        raise NoAddressAssignedError("Failed to get IPv4 for kubedee-demo-etcd")
    except KubedeeError as e:
        assert isinstance(e, NoAddressAssignedError)
        assert e.message == "Failed to get IPv4 for kubedee-demo-etcd"
