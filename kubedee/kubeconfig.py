"""kubeconfig files and shell credential environments."""

import base64
import ipaddress
import shlex
from pathlib import Path
from typing import Any

import yaml

from kubedee.exceptions import CertificateError
from kubedee.units import API_SERVER_PORT, ETCD_CLIENT_PORT

CLUSTER_NAME = "kubedee"
CONTEXT_NAME = "default"


def _b64(path: Path) -> str:
    try:
        data = Path(path).read_bytes()
    except OSError as e:
        raise CertificateError(f"Failed to read certificate {path}", str(e))
    return base64.b64encode(data).decode("ascii")


def build_kubeconfig(
    server: str,
    ca_path: Path,
    user: str,
    cert_path: Path,
    key_path: Path,
    embed_certs: bool = True,
) -> dict[str, Any]:
    """Build a single-context kubeconfig.

    The CA is always embedded. Client credentials are embedded when
    ``embed_certs`` is set and referenced by path otherwise.

    Args:
        server: API server URL
        ca_path: Cluster CA certificate
        user: Credential name
        cert_path: Client certificate
        key_path: Client key
        embed_certs: Embed the client certificate and key

    Returns:
        kubeconfig as a dictionary

    Raises:
        CertificateError: If a certificate or key cannot be read
    """
    if embed_certs:
        credentials = {
            "client-certificate-data": _b64(cert_path),
            "client-key-data": _b64(key_path),
        }
    else:
        credentials = {"client-certificate": str(cert_path), "client-key": str(key_path)}

    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [
            {
                "name": CLUSTER_NAME,
                "cluster": {"certificate-authority-data": _b64(ca_path), "server": server},
            }
        ],
        "users": [{"name": user, "user": credentials}],
        "contexts": [{"name": CONTEXT_NAME, "context": {"cluster": CLUSTER_NAME, "user": user}}],
        "current-context": CONTEXT_NAME,
        "preferences": {},
    }


def api_server_url(controller_ip: ipaddress.IPv4Address | str) -> str:
    return f"https://{controller_ip}:{API_SERVER_PORT}"


def write_kubeconfig(path: Path, config: dict[str, Any]) -> Path:
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(config, f, default_flow_style=False, sort_keys=False)
        path.chmod(0o600)
    except OSError as e:
        raise CertificateError(f"Failed to write kubeconfig {path}", str(e))
    return path


def kubectl_env(kubeconfig_path: Path) -> dict[str, str]:
    return {"KUBECONFIG": str(kubeconfig_path)}


def etcd_env(cert_dir: Path, etcd_ip: ipaddress.IPv4Address | str) -> dict[str, str]:
    cert_dir = Path(cert_dir)
    return {
        "ETCDCTL_CACERT": str(cert_dir / "ca.pem"),
        "ETCDCTL_CERT": str(cert_dir / "etcd.pem"),
        "ETCDCTL_KEY": str(cert_dir / "etcd-key.pem"),
        "ETCDCTL_INSECURE_TRANSPORT": "false",
        "ETCDCTL_ENDPOINTS": f"https://{etcd_ip}:{ETCD_CLIENT_PORT}",
        "ETCDCTL_API": "3",
    }


def export_lines(env: dict[str, str]) -> str:
    """Format variables as shell export statements."""
    return "\n".join(f"export {key}={shlex.quote(value)}" for key, value in env.items())
