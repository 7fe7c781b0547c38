"""Kubernetes manifests applied once the cluster is up."""

from importlib import resources
from typing import Any

import yaml

FLANNEL_MANIFEST = "kube-flannel.yml"


def apiserver_to_kubelet_rbac() -> list[dict[str, Any]]:
    """Let the API server (user ``kubernetes``) reach the kubelet API on every node."""
    cluster_role = {
        "apiVersion": "rbac.authorization.k8s.io/v1beta1",
        "kind": "ClusterRole",
        "metadata": {
            "annotations": {"rbac.authorization.kubernetes.io/autoupdate": "true"},
            "labels": {"kubernetes.io/bootstrapping": "rbac-defaults"},
            "name": "system:kube-apiserver-to-kubelet",
        },
        "rules": [
            {
                "apiGroups": [""],
                "resources": [
                    "nodes/proxy",
                    "nodes/stats",
                    "nodes/log",
                    "nodes/spec",
                    "nodes/metrics",
                ],
                "verbs": ["*"],
            }
        ],
    }
    binding = {
        "apiVersion": "rbac.authorization.k8s.io/v1beta1",
        "kind": "ClusterRoleBinding",
        "metadata": {"name": "system:kube-apiserver", "namespace": ""},
        "roleRef": {
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": "ClusterRole",
            "name": "system:kube-apiserver-to-kubelet",
        },
        "subjects": [
            {"apiGroup": "rbac.authorization.k8s.io", "kind": "User", "name": "kubernetes"}
        ],
    }
    return [cluster_role, binding]


def dump_all(documents: list[dict[str, Any]]) -> str:
    return yaml.safe_dump_all(documents, default_flow_style=False, sort_keys=False, explicit_start=True)


def flannel_manifest() -> str:
    """Text of the bundled flannel manifest."""
    return resources.files(__name__).joinpath(FLANNEL_MANIFEST).read_text()
