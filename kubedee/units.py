"""systemd unit definitions for every node role.

Each role is described by structured ``ServiceUnit`` models built from the
resolved node addresses; ``render`` turns a model into unit file text. No
orchestration happens here, so unit content is testable on its own.
"""

import ipaddress

from pydantic import BaseModel, Field

from kubedee.models.node import NodeRole

SERVICE_CLUSTER_IP_RANGE = "10.32.0.0/24"
CLUSTER_DNS = "10.32.0.10"
CLUSTER_CIDR = "10.244.0.0/16"
POD_CIDR = "10.20.0.0/16"
PROXY_CLUSTER_CIDR = "10.200.0.0/16"

ETCD_CLIENT_PORT = 2379
ETCD_PEER_PORT = 2380
API_SERVER_PORT = 6443
API_SERVER_INSECURE_PORT = 8080


class ServiceUnit(BaseModel):
    """A systemd service running one binary."""

    name: str
    description: str
    binary: str
    args: list[tuple[str, str | None]] = Field(default_factory=list)
    documentation: str | None = None
    after: list[str] = Field(default_factory=list)
    requires: list[str] = Field(default_factory=list)
    restart: str = "on-failure"
    restart_sec: str = "5"

    @property
    def filename(self) -> str:
        return f"{self.name}.service"

    def exec_start(self) -> str:
        parts = [self.binary]
        for flag, value in self.args:
            parts.append(flag if value is None else f"{flag}={value}")
        return " \\\n  ".join(parts)

    def render(self) -> str:
        """Render the unit file text."""
        lines = ["[Unit]", f"Description={self.description}"]
        if self.documentation:
            lines.append(f"Documentation={self.documentation}")
        if self.after:
            lines.append(f"After={' '.join(self.after)}")
        if self.requires:
            lines.append(f"Requires={' '.join(self.requires)}")
        lines += [
            "",
            "[Service]",
            f"ExecStart={self.exec_start()}",
            f"Restart={self.restart}",
            f"RestartSec={self.restart_sec}",
            "",
            "[Install]",
            "WantedBy=multi-user.target",
        ]
        return "\n".join(lines) + "\n"


def etcd_units(node_name: str, ip: ipaddress.IPv4Address | str) -> list[ServiceUnit]:
    peer_url = f"https://{ip}:{ETCD_PEER_PORT}"
    client_url = f"https://{ip}:{ETCD_CLIENT_PORT}"
    return [
        ServiceUnit(
            name="etcd",
            description="etcd",
            binary="/usr/local/bin/etcd",
            args=[
                ("--name", node_name),
                ("--cert-file", "/etc/etcd/etcd.pem"),
                ("--key-file", "/etc/etcd/etcd-key.pem"),
                ("--peer-cert-file", "/etc/etcd/etcd.pem"),
                ("--peer-key-file", "/etc/etcd/etcd-key.pem"),
                ("--trusted-ca-file", "/etc/etcd/ca.pem"),
                ("--peer-trusted-ca-file", "/etc/etcd/ca.pem"),
                ("--peer-client-cert-auth", None),
                ("--client-cert-auth", None),
                ("--initial-advertise-peer-urls", peer_url),
                ("--listen-peer-urls", peer_url),
                ("--listen-client-urls", f"{client_url},http://127.0.0.1:{ETCD_CLIENT_PORT}"),
                ("--advertise-client-urls", client_url),
                ("--initial-cluster-token", "etcd-cluster-0"),
                ("--initial-cluster", f"{node_name}={peer_url}"),
                ("--initial-cluster-state", "new"),
                ("--data-dir", "/var/lib/etcd"),
            ],
        )
    ]


def controller_units(ip: ipaddress.IPv4Address | str, etcd_ip: ipaddress.IPv4Address | str) -> list[ServiceUnit]:
    master = f"http://{ip}:{API_SERVER_INSECURE_PORT}"
    apiserver = ServiceUnit(
        name="kube-apiserver",
        description="Kubernetes API Server",
        binary="/usr/local/bin/kube-apiserver",
        args=[
            (
                "--admission-control",
                "NamespaceLifecycle,NodeRestriction,LimitRanger,ServiceAccount,"
                "DefaultStorageClass,ResourceQuota",
            ),
            ("--allow-privileged", "true"),
            ("--apiserver-count", "3"),
            ("--audit-log-maxage", "30"),
            ("--audit-log-maxbackup", "3"),
            ("--audit-log-maxsize", "100"),
            ("--audit-log-path", "/var/log/audit.log"),
            ("--authorization-mode", "Node,RBAC"),
            ("--bind-address", "0.0.0.0"),
            ("--client-ca-file", "/etc/kubernetes/ca.pem"),
            ("--enable-swagger-ui", "true"),
            ("--etcd-cafile", "/etc/kubernetes/ca.pem"),
            ("--etcd-certfile", "/etc/kubernetes/kubernetes.pem"),
            ("--etcd-keyfile", "/etc/kubernetes/kubernetes-key.pem"),
            ("--etcd-servers", f"https://{etcd_ip}:{ETCD_CLIENT_PORT}"),
            ("--event-ttl", "1h"),
            ("--insecure-bind-address", "0.0.0.0"),
            ("--kubelet-certificate-authority", "/etc/kubernetes/ca.pem"),
            ("--kubelet-client-certificate", "/etc/kubernetes/kubernetes.pem"),
            ("--kubelet-client-key", "/etc/kubernetes/kubernetes-key.pem"),
            ("--kubelet-https", "true"),
            ("--runtime-config", "rbac.authorization.k8s.io/v1alpha1"),
            ("--service-account-key-file", "/etc/kubernetes/ca-key.pem"),
            ("--service-cluster-ip-range", SERVICE_CLUSTER_IP_RANGE),
            ("--service-node-port-range", "30000-32767"),
            ("--tls-ca-file", "/etc/kubernetes/ca.pem"),
            ("--tls-cert-file", "/etc/kubernetes/kubernetes.pem"),
            ("--tls-private-key-file", "/etc/kubernetes/kubernetes-key.pem"),
            ("--v", "2"),
        ],
    )
    controller_manager = ServiceUnit(
        name="kube-controller-manager",
        description="Kubernetes Controller Manager",
        documentation="https://github.com/GoogleCloudPlatform/kubernetes",
        binary="/usr/local/bin/kube-controller-manager",
        args=[
            ("--address", "0.0.0.0"),
            ("--allocate-node-cidrs", "true"),
            ("--cluster-cidr", CLUSTER_CIDR),
            ("--cluster-name", "kubernetes"),
            ("--cluster-signing-cert-file", "/etc/kubernetes/ca.pem"),
            ("--cluster-signing-key-file", "/etc/kubernetes/ca-key.pem"),
            ("--leader-elect", "true"),
            ("--master", master),
            ("--root-ca-file", "/etc/kubernetes/ca.pem"),
            ("--service-account-private-key-file", "/etc/kubernetes/ca-key.pem"),
            ("--service-cluster-ip-range", SERVICE_CLUSTER_IP_RANGE),
            ("--v", "2"),
        ],
    )
    scheduler = ServiceUnit(
        name="kube-scheduler",
        description="Kubernetes Scheduler",
        binary="/usr/local/bin/kube-scheduler",
        args=[("--leader-elect", "true"), ("--master", master), ("--v", "2")],
    )
    return [apiserver, controller_manager, scheduler]


def worker_units(node_name: str) -> list[ServiceUnit]:
    crio = ServiceUnit(
        name="crio",
        description="CRI-O daemon",
        binary="/usr/local/bin/crio",
        args=[("--runtime", "/usr/local/bin/runc"), ("--registry", "docker.io")],
        restart="always",
        restart_sec="10s",
    )
    kubelet = ServiceUnit(
        name="kubelet",
        description="Kubernetes Kubelet",
        binary="/usr/local/bin/kubelet",
        after=["crio.service"],
        requires=["crio.service"],
        args=[
            ("--fail-swap-on", "false"),
            ("--anonymous-auth", "false"),
            ("--authorization-mode", "Webhook"),
            ("--client-ca-file", "/etc/kubernetes/ca.pem"),
            ("--allow-privileged", "true"),
            ("--cluster-dns", CLUSTER_DNS),
            ("--cluster-domain", "cluster.local"),
            ("--container-runtime", "remote"),
            ("--container-runtime-endpoint", "unix:///var/run/crio/crio.sock"),
            ("--image-pull-progress-deadline", "2m"),
            ("--image-service-endpoint", "unix:///var/run/crio/crio.sock"),
            ("--kubeconfig", "/etc/kubernetes/kubelet.kubeconfig"),
            ("--network-plugin", "cni"),
            ("--pod-cidr", POD_CIDR),
            ("--register-node", "true"),
            ("--runtime-request-timeout", "10m"),
            ("--tls-cert-file", f"/etc/kubernetes/{node_name}.pem"),
            ("--tls-private-key-file", f"/etc/kubernetes/{node_name}-key.pem"),
            ("--v", "2"),
        ],
    )
    proxy = ServiceUnit(
        name="kube-proxy",
        description="Kubernetes Kube Proxy",
        binary="/usr/local/bin/kube-proxy",
        args=[
            ("--cluster-cidr", PROXY_CLUSTER_CIDR),
            ("--kubeconfig", "/etc/kubernetes/kube-proxy.kubeconfig"),
            ("--proxy-mode", "iptables"),
            ("--v", "2"),
        ],
    )
    return [crio, kubelet, proxy]


WORKER_PREPARE_COMMANDS = [
    "mkdir -p /etc/containers",
    "ln -sf /etc/crio/policy.json /etc/containers/policy.json",
    "mkdir -p /etc/cni/net.d",
]


def install_script(units: list[ServiceUnit], prepare: list[str] | None = None) -> str:
    """Shell script writing the unit files, then enabling and starting them in order."""
    lines = ["set -euo pipefail", ""]
    lines += prepare or []
    for unit in units:
        marker = unit.name.upper().replace("-", "_") + "_UNIT"
        lines += [
            f"cat >/etc/systemd/system/{unit.filename} <<'{marker}'",
            unit.render().rstrip("\n"),
            marker,
            "",
        ]
    lines.append("systemctl daemon-reload")
    for unit in units:
        lines += [f"systemctl -q enable {unit.name}", f"systemctl start {unit.name}"]
    return "\n".join(lines) + "\n"


def units_for_role(
    role: NodeRole,
    node_name: str,
    ip: ipaddress.IPv4Address | str,
    etcd_ip: ipaddress.IPv4Address | str | None = None,
) -> list[ServiceUnit]:
    if role == NodeRole.ETCD:
        return etcd_units(node_name, ip)
    if role == NodeRole.CONTROLLER:
        if etcd_ip is None:
            raise ValueError("controller units require the etcd address")
        return controller_units(ip, etcd_ip)
    return worker_units(node_name)
