"""Custom exceptions for kubedee."""


class KubedeeError(Exception):
    """Base exception for all kubedee errors."""

    def __init__(self, message: str, details: str = None):
        """Initialize the exception.

        Args:
            message: Main error message
            details: Additional details or suggestions
        """
        self.message = message
        self.details = details
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message.

        Returns:
            Formatted error message with details
        """
        if self.details:
            return f"{self.message}\n\nDetails: {self.details}"
        return self.message


class InvalidNameError(KubedeeError):
    """Exception raised for a malformed cluster name."""

    pass


class AlreadyExistsError(KubedeeError):
    """Exception raised when a cluster to be created already exists."""

    pass


class NotFoundError(KubedeeError):
    """Exception raised when a cluster does not exist."""

    pass


class FetchError(KubedeeError):
    """Exception raised when downloading or unpacking an artifact fails."""

    pass


class CopyError(KubedeeError):
    """Exception raised when staging a file into a cluster fails."""

    pass


class NoAddressAssignedError(KubedeeError):
    """Exception raised when a node has no IPv4 address yet."""

    pass


class NodeUnresponsiveError(KubedeeError):
    """Exception raised when a node does not become ready in time."""

    pass


class ImagePublishError(KubedeeError):
    """Exception raised when the worker base image cannot be prepared."""

    pass


class CertificateError(KubedeeError):
    """Exception raised for CA and leaf certificate failures."""

    pass


class LXDError(KubedeeError):
    """Exception raised when an lxc command fails."""

    def __init__(self, command: list[str], returncode: int, stderr: str = ""):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"Command '{' '.join(command)}' failed with return code {returncode}",
            stderr.strip() or None,
        )


class ConfigurationError(KubedeeError):
    """Exception raised for configuration errors."""

    pass
