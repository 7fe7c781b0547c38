"""Property-based tests for systemd unit rendering."""

import ipaddress

import pytest
from hypothesis import given
from hypothesis import strategies as st

from kubedee.models.node import NodeRole
from kubedee.units import (
    WORKER_PREPARE_COMMANDS,
    ServiceUnit,
    controller_units,
    etcd_units,
    install_script,
    units_for_role,
    worker_units,
)

ipv4 = st.ip_addresses(v=4)
node_suffix = st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789", min_size=5, max_size=5)


@given(ip=ipv4)
def test_etcd_unit_advertises_node_address(ip):
    """The etcd unit listens and advertises on the node's own address."""
    (unit,) = etcd_units("kubedee-demo-etcd", ip)
    rendered = unit.render()

    assert f"--listen-peer-urls=https://{ip}:2380" in rendered
    assert f"--advertise-client-urls=https://{ip}:2379" in rendered
    assert f"--initial-cluster=kubedee-demo-etcd=https://{ip}:2380" in rendered
    assert "--name=kubedee-demo-etcd" in rendered


@given(ip=ipv4, etcd_ip=ipv4)
def test_controller_units_point_at_etcd(ip, etcd_ip):
    units = controller_units(ip, etcd_ip)

    assert [u.name for u in units] == ["kube-apiserver", "kube-controller-manager", "kube-scheduler"]
    assert f"--etcd-servers=https://{etcd_ip}:2379" in units[0].render()
    for unit in units[1:]:
        assert f"--master=http://{ip}:8080" in unit.render()


@given(suffix=node_suffix)
def test_worker_units_use_node_certificate(suffix):
    name = f"kubedee-demo-worker-{suffix}"
    crio, kubelet, proxy = worker_units(name)

    rendered = kubelet.render()
    assert f"--tls-cert-file=/etc/kubernetes/{name}.pem" in rendered
    assert f"--tls-private-key-file=/etc/kubernetes/{name}-key.pem" in rendered
    assert "Requires=crio.service" in rendered
    assert "--kubeconfig=/etc/kubernetes/kube-proxy.kubeconfig" in proxy.render()
    assert "Restart=always" in crio.render()


@given(ip=ipv4, etcd_ip=ipv4, role=st.sampled_from(list(NodeRole)))
def test_every_unit_renders_complete_sections(ip, etcd_ip, role):
    for unit in units_for_role(role, "kubedee-demo-node", ip, etcd_ip):
        rendered = unit.render()

        assert rendered.startswith("[Unit]\n")
        assert "\n[Service]\n" in rendered
        assert rendered.endswith("[Install]\nWantedBy=multi-user.target\n")
        assert f"ExecStart={unit.binary}" in rendered


@given(
    args=st.lists(
        st.tuples(
            st.from_regex(r"--[a-z][a-z-]{0,20}", fullmatch=True),
            st.one_of(st.none(), st.from_regex(r"[a-z0-9./:]{1,20}", fullmatch=True)),
        ),
        max_size=10,
    )
)
def test_exec_start_keeps_every_flag(args):
    unit = ServiceUnit(name="demo", description="demo", binary="/usr/local/bin/demo", args=args)
    lines = unit.exec_start().split(" \\\n  ")

    assert lines[0] == "/usr/local/bin/demo"
    assert len(lines) == len(args) + 1
    for line, (flag, value) in zip(lines[1:], args):
        assert line == (flag if value is None else f"{flag}={value}")


def test_controller_requires_etcd_address():
    with pytest.raises(ValueError, match="etcd"):
        units_for_role(NodeRole.CONTROLLER, "kubedee-demo-controller", ipaddress.IPv4Address("10.0.0.1"))


def test_install_script_starts_units_in_order():
    units = worker_units("kubedee-demo-worker-abcde")

    script = install_script(units, WORKER_PREPARE_COMMANDS)

    assert script.startswith("set -euo pipefail\n")
    assert "cat >/etc/systemd/system/kube-proxy.service <<'KUBE_PROXY_UNIT'" in script
    reload_at = script.index("systemctl daemon-reload")
    starts = [script.index(f"systemctl start {unit.name}") for unit in units]
    assert reload_at < starts[0] < starts[1] < starts[2]
    assert script.index("mkdir -p /etc/cni/net.d") < reload_at
