"""Cluster lifecycle orchestration.

``ClusterOrchestrator`` sequences the LXD driver, the artifact cache and the
cluster CA into the ``create``, ``start``, ``start_worker`` and ``delete``
operations. Ordering is strict: etcd before the controller before workers,
the CA before any leaf certificate, a running container before any file is
pushed to it. Every step checks for existing state first so re-running an
operation after a failure is safe. A failed ``start`` leaves already started
nodes running.
"""

import ipaddress
import re
import shutil
import time
from collections.abc import Callable
from pathlib import Path

from filelock import FileLock, Timeout

from kubedee import manifests
from kubedee.cache import ArtifactCache
from kubedee.config import WORKER_IMAGE_PREFIX, KubedeeConfig
from kubedee.exceptions import (
    AlreadyExistsError,
    CopyError,
    ImagePublishError,
    KubedeeError,
    LXDError,
    NoAddressAssignedError,
    NodeUnresponsiveError,
    NotFoundError,
)
from kubedee.kubeconfig import api_server_url, build_kubeconfig, etcd_env, kubectl_env, write_kubeconfig
from kubedee.logging_config import get_logger
from kubedee.lxd import Driver, LXDClient
from kubedee.models.artifact import (
    CachedArtifact,
    cni_plugins_artifact,
    crio_artifact,
    etcd_artifact,
    runc_artifact,
)
from kubedee.models.cluster import ClusterName, ClusterPaths
from kubedee.models.node import SUFFIX_LENGTH, Node, NodeRole, random_suffix
from kubedee.pki import (
    CertificateAuthority,
    admin_spec,
    etcd_spec,
    kube_proxy_spec,
    kubernetes_spec,
    worker_spec,
)
from kubedee.readiness import wait_for, wait_running
from kubedee.units import WORKER_PREPARE_COMMANDS, install_script, units_for_role
from kubedee.validation import validate_name

logger = get_logger(__name__)

K8S_BINARIES = [
    "kube-apiserver",
    "kube-controller-manager",
    "kube-proxy",
    "kube-scheduler",
    "kubectl",
    "kubelet",
]

DEFAULT_RAW_LXC = "lxc.aa_allow_incomplete=1"

WORKER_RAW_LXC = "\n".join(
    [
        "lxc.aa_profile=unconfined",
        "lxc.mount.auto=proc:rw sys:rw cgroup:rw",
        "lxc.cgroup.devices.allow=a",
        "lxc.cap.drop=",
        "lxc.aa_allow_incomplete=1",
    ]
)

WORKER_CONFIG = {
    "security.privileged": "true",
    "security.nesting": "true",
    "linux.kernel_modules": "ip_tables,ip6_tables,netlink_diag,nf_nat,overlay",
    "raw.lxc": WORKER_RAW_LXC,
}

WORKER_IMAGE_SETUP_SCRIPT = """set -euo pipefail

apt-get update
apt-get upgrade -y

# crio requires libgpgme11
apt-get install -y libgpgme11
"""

# Binaries bind-mounted into each role, as (device name, rootfs-relative source, container path)
ETCD_DEVICES = [
    ("binary-etcd", "usr/local/bin/etcd", "/usr/local/bin/etcd"),
    ("binary-etcdctl", "usr/local/bin/etcdctl", "/usr/local/bin/etcdctl"),
]
CONTROLLER_DEVICES = [
    ("binary-kube-apiserver", "usr/local/bin/kube-apiserver", "/usr/local/bin/kube-apiserver"),
    (
        "binary-kube-controller-manager",
        "usr/local/bin/kube-controller-manager",
        "/usr/local/bin/kube-controller-manager",
    ),
    ("binary-kube-scheduler", "usr/local/bin/kube-scheduler", "/usr/local/bin/kube-scheduler"),
    ("binary-kubectl", "usr/local/bin/kubectl", "/usr/local/bin/kubectl"),
]
WORKER_DEVICES = [
    ("binary-kubelet", "usr/local/bin/kubelet", "/usr/local/bin/kubelet"),
    ("binary-kube-proxy", "usr/local/bin/kube-proxy", "/usr/local/bin/kube-proxy"),
    ("binary-kubectl", "usr/local/bin/kubectl", "/usr/local/bin/kubectl"),
    ("binary-runc", "usr/local/bin/runc", "/usr/local/bin/runc"),
    ("binary-crio", "usr/local/bin/crio", "/usr/local/bin/crio"),
    ("crio-config", "etc/crio", "/etc/crio/"),
    ("crio-libexec", "usr/local/libexec/crio", "/usr/local/libexec/crio/"),
    ("cni-plugins", "opt/cni/bin", "/opt/cni/bin/"),
]


class ClusterOrchestrator:
    """Creates, starts and deletes kubedee clusters."""

    def __init__(
        self,
        config: KubedeeConfig,
        driver: Driver | None = None,
        cache: ArtifactCache | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        suffix_factory: Callable[[], str] = random_suffix,
    ):
        """Initialize the orchestrator.

        Args:
            config: kubedee configuration
            driver: Virtualization driver, an LXDClient by default
            cache: Artifact cache, built from the configuration by default
            sleep: Sleep function used while polling
            clock: Monotonic clock used for polling deadlines
            suffix_factory: Generates worker suffixes
        """
        self.config = config
        self.driver = driver or LXDClient()
        self.cache = cache or ArtifactCache(config.cache_config())
        self.store = config.store_config()
        self.sleep = sleep
        self.clock = clock
        self.suffix_factory = suffix_factory

    # Lookups

    def paths(self, cluster: ClusterName) -> ClusterPaths:
        return ClusterPaths.for_cluster(self.store.clusters_dir, cluster)

    def _require_cluster(self, name: str) -> tuple[ClusterName, ClusterPaths]:
        cluster = validate_name(name)
        paths = self.paths(cluster)
        if not paths.exists():
            raise NotFoundError(
                f"Cluster '{cluster}' not found",
                f"Expected directory {paths.root}. Create it with: kubedee create {cluster}",
            )
        return cluster, paths

    def list_clusters(self) -> list[str]:
        clusters_dir = self.store.clusters_dir
        if not clusters_dir.is_dir():
            return []
        return sorted(p.name for p in clusters_dir.iterdir() if p.is_dir())

    def cluster_containers(self, cluster: ClusterName) -> list[str]:
        """Names of all containers belonging to a cluster.

        Matches exact role names only, so cluster 'foo' never claims the
        containers of cluster 'foo-bar'.
        """
        pattern = re.compile(
            re.escape(cluster.container_prefix) + rf"(etcd|controller|worker-[a-z0-9]{{{SUFFIX_LENGTH}}})"
        )
        return [name for name in self.driver.list_containers() if pattern.fullmatch(name)]

    def artifacts(self) -> list[CachedArtifact]:
        return [
            etcd_artifact(self.config.etcd_version),
            crio_artifact(self.config.crio_version),
            runc_artifact(self.config.runc_version),
            cni_plugins_artifact(self.config.cni_plugins_version),
        ]

    # create

    def create(self, name: str, bin_dir: str | Path | None = None) -> ClusterPaths:
        """Provision a new cluster on disk and in LXD.

        Args:
            name: Unvalidated cluster name
            bin_dir: Directory with the Kubernetes binaries

        Returns:
            Paths of the new cluster

        Raises:
            AlreadyExistsError: If the cluster directory already exists
            CopyError: If a Kubernetes binary is missing from bin_dir
        """
        cluster = validate_name(name)
        paths = self.paths(cluster)
        if paths.exists():
            raise AlreadyExistsError(
                f"Found existing cluster with name: {cluster}",
                f"Delete it first with: kubedee delete {cluster}",
            )
        source_dir = self.config.resolve_bin_dir(bin_dir)
        self._check_k8s_binaries(source_dir)

        logger.info(f"Creating new cluster {cluster} ...")
        self.create_network(cluster)
        self.create_storage_pool()
        self.prepare_worker_image(cluster)

        try:
            self.copy_k8s_binaries(paths, source_dir)
            self.stage_artifacts(paths)
            ca = CertificateAuthority.create(paths.certificates)
            ca.issue_leaf(admin_spec())
        except KubedeeError:
            # Leave nothing behind that would make a retry fail with AlreadyExistsError
            shutil.rmtree(paths.root, ignore_errors=True)
            raise

        logger.info(f"Cluster {cluster} created")
        return paths

    def create_network(self, cluster: ClusterName) -> None:
        if not self.driver.network_exists(cluster.network):
            logger.info(f"Creating network {cluster.network} ...")
            self.driver.create_network(cluster.network)

    def create_storage_pool(self) -> None:
        pool = self.config.storage_pool
        if not self.driver.storage_pool_exists(pool):
            logger.info(f"Creating storage pool {pool} ({self.config.storage_driver}) ...")
            self.driver.create_storage_pool(pool, self.config.storage_driver)

    def _check_k8s_binaries(self, source_dir: Path) -> None:
        for binary in K8S_BINARIES:
            source = source_dir / binary
            if not source.is_file():
                raise CopyError(
                    f"Failed to copy '{source}'",
                    "File not found. Pass --bin-dir or set KUBEDEE_K8S_BIN_DIR to the Kubernetes binaries",
                )

    def copy_k8s_binaries(self, paths: ClusterPaths, source_dir: Path) -> None:
        """Copy the Kubernetes binaries into the cluster rootfs.

        Raises:
            CopyError: Naming the first binary that is missing or cannot be copied
        """
        self._check_k8s_binaries(source_dir)
        paths.bin_dir.mkdir(parents=True, exist_ok=True)
        for binary in K8S_BINARIES:
            source = source_dir / binary
            try:
                shutil.copy2(source, paths.bin_dir / binary)
            except OSError as e:
                raise CopyError(f"Failed to copy '{source}' to '{paths.bin_dir}'", str(e))

    def stage_artifacts(self, paths: ClusterPaths) -> None:
        """Fetch (once) and link etcd, cri-o, runc and the CNI plugins into the rootfs."""
        etcd, crio, runc, cni = self.artifacts()

        self.cache.ensure(etcd)
        self.cache.stage(etcd, paths.bin_dir, ["etcd", "etcdctl"])

        self.cache.ensure(crio)
        self.cache.stage(crio, paths.bin_dir, ["crio"])
        self.cache.stage(crio, paths.crio_libexec_dir, ["pause", "conmon"])
        self.cache.stage(
            crio,
            paths.crio_config_dir,
            ["seccomp.json", "crio.conf", "crictl.yaml", "crio-umount.conf", "policy.json"],
        )

        self.cache.ensure(runc)
        self.cache.stage(runc, paths.bin_dir, ["runc"])

        self.cache.ensure(cni)
        self.cache.stage(cni, paths.cni_bin_dir)

    def prepare_worker_image(self, cluster: ClusterName) -> None:
        """Publish the worker base image for this kubedee version if missing.

        Raises:
            ImagePublishError: If the image cannot be built or published
        """
        alias = self.config.worker_image
        lock_dir = self.config.cache_config().lock_dir
        lock_dir.mkdir(parents=True, exist_ok=True)
        try:
            with FileLock(str(lock_dir / f"image-{alias}.lock"), timeout=self.config.wait_timeout * 4):
                self._prepare_worker_image(cluster, alias)
        except Timeout:
            raise ImagePublishError(
                f"Timed out waiting for another process preparing {alias}",
                f"Remove {lock_dir / f'image-{alias}.lock'} if no other kubedee process is running",
            )

    def _prepare_worker_image(self, cluster: ClusterName, alias: str) -> None:
        logger.info("Pruning old kubedee worker images ...")
        for existing in self.driver.list_image_aliases():
            if existing.startswith(WORKER_IMAGE_PREFIX) and existing != alias:
                logger.debug(f"Deleting stale image {existing}")
                self.driver.delete_image(existing)

        if self.driver.image_exists(alias):
            logger.debug(f"Reusing worker image {alias}")
            return

        logger.info("Preparing kubedee worker image ...")
        setup = f"{alias}-setup"
        try:
            self.driver.delete(setup, force=True)
        except LXDError as e:
            logger.debug(f"No leftover {setup} to delete: {e.message}")

        try:
            self.driver.launch(
                self.config.container_image,
                setup,
                storage=self.config.storage_pool,
                network=cluster.network,
                config={"raw.lxc": DEFAULT_RAW_LXC},
            )
            self._wait_running(setup)
            self.driver.exec(setup, ["bash"], stdin=WORKER_IMAGE_SETUP_SCRIPT)
            self.driver.snapshot(setup, "snap")
            self.driver.publish(f"{setup}/snap", alias, {"kubedee-version": self.config.version})
            self.driver.delete(setup, force=True)
        except (LXDError, NodeUnresponsiveError) as e:
            raise ImagePublishError(f"Failed to prepare worker image {alias}", e.format_message())

    # start

    def start(self, name: str) -> list[Node]:
        """Launch and configure etcd, the controller and one worker.

        Returns:
            The started nodes in configuration order

        Raises:
            NotFoundError: If the cluster does not exist
        """
        cluster, paths = self._require_cluster(name)
        ca = CertificateAuthority.load(paths.certificates)

        etcd = Node.etcd(cluster)
        controller = Node.controller(cluster)
        worker = Node.worker(cluster, self.suffix_factory())

        logger.info(f"Starting cluster {cluster} ...")
        self.launch_node(etcd)
        self.launch_node(controller)
        self.launch_node(worker)

        self.configure_etcd(etcd, paths, ca)
        self.configure_controller(controller, etcd, paths, ca)
        self.configure_worker(worker, controller, paths, ca)

        self.create_admin_kubeconfig(controller, paths)
        self.configure_rbac(controller)
        self.deploy_flannel(controller)

        logger.info(f"Cluster {cluster} started")
        return [etcd, controller, worker]

    def start_worker(self, name: str) -> Node:
        """Launch and configure one additional worker.

        Raises:
            NotFoundError: If the cluster does not exist or its controller was never configured
        """
        cluster, paths = self._require_cluster(name)
        self._require_controller_credentials(cluster, paths)
        ca = CertificateAuthority.load(paths.certificates)
        controller = Node.controller(cluster)
        worker = Node.worker(cluster, self.suffix_factory())

        self.launch_node(worker)
        self.configure_worker(worker, controller, paths, ca)
        logger.info(f"Worker {worker} started")
        return worker

    def _require_controller_credentials(self, cluster: ClusterName, paths: ClusterPaths) -> None:
        for name in ("kubernetes.pem", "kube-proxy.pem"):
            path = paths.certificates / name
            if not path.is_file():
                raise NotFoundError(
                    f"Missing {path}, the controller of cluster '{cluster}' is not configured",
                    f"Start the cluster first with: kubedee start {cluster}",
                )

    def up(self, name: str, bin_dir: str | Path | None = None) -> list[Node]:
        """Create and start a cluster."""
        self.create(name, bin_dir)
        return self.start(name)

    def launch_node(self, node: Node) -> None:
        name = node.container_name
        if self.driver.container_exists(name):
            logger.debug(f"{name} already exists")
            return
        logger.info(f"Launching {name} ...")
        if node.role == NodeRole.WORKER:
            self.driver.launch(
                self.config.worker_image,
                name,
                storage=self.config.storage_pool,
                network=node.cluster.network,
                config=WORKER_CONFIG,
                profiles=["default"],
            )
        else:
            self.driver.launch(
                self.config.container_image,
                name,
                storage=self.config.storage_pool,
                network=node.cluster.network,
                config={"raw.lxc": DEFAULT_RAW_LXC},
            )

    def _wait_running(self, name: str) -> ipaddress.IPv4Address:
        return wait_running(
            self.driver,
            name,
            interval=self.config.poll_interval,
            timeout=self.config.wait_timeout,
            sleep=self.sleep,
            clock=self.clock,
        )

    def node_address(self, node: Node) -> ipaddress.IPv4Address:
        """Current address of a node that is expected to be up.

        Raises:
            NoAddressAssignedError: If the node has no IPv4 address
        """
        address = self.driver.ipv4_address(node.container_name)
        if not address:
            raise NoAddressAssignedError(f"Failed to get IPv4 for {node}")
        return ipaddress.IPv4Address(address)

    def _attach_devices(self, node: Node, paths: ClusterPaths, devices: list[tuple[str, str, str]]) -> None:
        for device, source, target in devices:
            self.driver.add_disk_device(node.container_name, device, paths.rootfs / source, target)

    def _push(self, node: Node, sources: list[Path], target_dir: str) -> None:
        for source in sources:
            self.driver.push_file(node.container_name, source, f"{target_dir}/{source.name}")

    def _install_units(
        self,
        node: Node,
        ip: ipaddress.IPv4Address | str,
        etcd_ip: ipaddress.IPv4Address | str | None = None,
        prepare: list[str] | None = None,
    ) -> None:
        logger.info(f"Configuring {node} ...")
        units = units_for_role(node.role, node.container_name, ip, etcd_ip)
        self.driver.exec(node.container_name, ["bash"], stdin=install_script(units, prepare))

    def configure_etcd(self, node: Node, paths: ClusterPaths, ca: CertificateAuthority) -> None:
        node.ipv4 = self._wait_running(node.container_name)
        ca.issue_leaf(etcd_spec(self.node_address(node), node.container_name))

        logger.info(f"Providing files to {node} ...")
        self._attach_devices(node, paths, ETCD_DEVICES)
        certs = paths.certificates
        self._push(node, [certs / "etcd.pem", certs / "etcd-key.pem", certs / "ca.pem"], "/etc/etcd")

        self._install_units(node, node.ipv4)

    def configure_controller(
        self, node: Node, etcd: Node, paths: ClusterPaths, ca: CertificateAuthority
    ) -> None:
        etcd_ip = self.node_address(etcd)
        node.ipv4 = self._wait_running(node.container_name)
        ca.issue_leaf(kubernetes_spec(self.node_address(node), node.container_name))
        ca.issue_leaf(kube_proxy_spec())

        logger.info(f"Providing files to {node} ...")
        self._attach_devices(node, paths, CONTROLLER_DEVICES)
        certs = paths.certificates
        self._push(
            node,
            [certs / "kubernetes.pem", certs / "kubernetes-key.pem", certs / "ca.pem", certs / "ca-key.pem"],
            "/etc/kubernetes",
        )

        self._install_units(node, node.ipv4, etcd_ip=etcd_ip)

    def configure_worker(
        self, node: Node, controller: Node, paths: ClusterPaths, ca: CertificateAuthority
    ) -> None:
        node.ipv4 = self._wait_running(node.container_name)
        controller_ip = self.node_address(controller)
        ca.issue_leaf(worker_spec(self.node_address(node), node.container_name))
        kube_proxy, kubelet = self.create_worker_kubeconfigs(node, controller_ip, paths)

        logger.info(f"Providing files to {node} ...")
        self._attach_devices(node, paths, WORKER_DEVICES)
        certs = paths.certificates
        name = node.container_name
        self._push(node, [certs / f"{name}.pem", certs / f"{name}-key.pem", certs / "ca.pem"], "/etc/kubernetes")
        self.driver.push_file(name, kube_proxy, "/etc/kubernetes/kube-proxy.kubeconfig")
        self.driver.push_file(name, kubelet, "/etc/kubernetes/kubelet.kubeconfig")

        self._install_units(node, node.ipv4, prepare=WORKER_PREPARE_COMMANDS)

    def create_worker_kubeconfigs(
        self, node: Node, controller_ip: ipaddress.IPv4Address | str, paths: ClusterPaths
    ) -> tuple[Path, Path]:
        """Write the kube-proxy and per-worker kubelet kubeconfigs."""
        logger.info(f"Generate {node} kubeconfig ...")
        certs = paths.certificates
        server = api_server_url(controller_ip)
        kube_proxy = write_kubeconfig(
            paths.kubeconfig / "kube-proxy.kubeconfig",
            build_kubeconfig(
                server, certs / "ca.pem", "kube-proxy", certs / "kube-proxy.pem", certs / "kube-proxy-key.pem"
            ),
        )
        name = node.container_name
        kubelet = write_kubeconfig(
            paths.kubeconfig / f"{name}-kubelet.kubeconfig",
            build_kubeconfig(
                server, certs / "ca.pem", f"system:node:{name}", certs / f"{name}.pem", certs / f"{name}-key.pem"
            ),
        )
        return kube_proxy, kubelet

    def create_admin_kubeconfig(self, controller: Node, paths: ClusterPaths) -> Path:
        certs = paths.certificates
        return write_kubeconfig(
            paths.admin_kubeconfig,
            build_kubeconfig(
                api_server_url(self.node_address(controller)),
                certs / "ca.pem",
                "admin",
                certs / "admin.pem",
                certs / "admin-key.pem",
                embed_certs=False,
            ),
        )

    def _kubectl_apply(self, controller: Node, manifest: str) -> None:
        self.driver.exec(controller.container_name, ["kubectl", "apply", "-f", "-"], stdin=manifest)

    def wait_for_api_server(self, controller: Node) -> None:
        def healthy() -> bool:
            try:
                output = self.driver.exec(controller.container_name, ["kubectl", "get", "--raw", "/healthz"])
            except LXDError:
                return False
            return output.strip() == "ok"

        wait_for(
            healthy,
            f"the API server on {controller}",
            interval=self.config.poll_interval,
            timeout=self.config.wait_timeout,
            sleep=self.sleep,
            clock=self.clock,
        )

    def configure_rbac(self, controller: Node) -> None:
        self._wait_running(controller.container_name)
        self.wait_for_api_server(controller)
        logger.info("Configuring RBAC ...")
        self._kubectl_apply(controller, manifests.dump_all(manifests.apiserver_to_kubelet_rbac()))

    def deploy_flannel(self, controller: Node) -> None:
        logger.info("Deploying flannel ...")
        self._kubectl_apply(controller, manifests.flannel_manifest())

    # delete

    def delete(self, name: str) -> bool:
        """Delete every container, the network and the directory of a cluster.

        All steps are attempted even if one fails.

        Returns:
            False if nothing belonging to the cluster was found

        Raises:
            KubedeeError: Listing the steps that failed
        """
        cluster = validate_name(name)
        paths = self.paths(cluster)
        found = False
        failures = []

        try:
            containers = self.cluster_containers(cluster)
        except LXDError as e:
            logger.error(f"Failed to list containers of {cluster}: {e.message}")
            failures.append("containers (listing failed)")
            containers = []

        for container in containers:
            found = True
            logger.info(f"Deleting {container} ...")
            try:
                self.driver.delete(container, force=True)
            except LXDError as e:
                logger.error(f"Failed to delete {container}: {e.message}")
                failures.append(container)

        try:
            if self.driver.network_exists(cluster.network):
                found = True
                logger.info(f"Deleting network {cluster.network} ...")
                self.driver.delete_network(cluster.network)
        except LXDError as e:
            logger.error(f"Failed to delete network {cluster.network}: {e.message}")
            failures.append(cluster.network)

        if paths.exists():
            found = True
            try:
                shutil.rmtree(paths.root)
            except OSError as e:
                logger.error(f"Failed to remove {paths.root}: {e}")
                failures.append(str(paths.root))

        if failures:
            raise KubedeeError(f"Failed to delete cluster {cluster}", "Could not remove: " + ", ".join(failures))
        if not found:
            logger.warning(f"Cluster {cluster} not found, nothing to delete")
        return found

    # environment

    def kubectl_env(self, name: str) -> dict[str, str]:
        _, paths = self._require_cluster(name)
        return kubectl_env(paths.admin_kubeconfig)

    def etcd_env(self, name: str) -> dict[str, str]:
        cluster, paths = self._require_cluster(name)
        return etcd_env(paths.certificates, self.node_address(Node.etcd(cluster)))
