"""kubedee: ephemeral Kubernetes clusters on LXD."""

__version__ = "0.1.0"
