import os

import pytest
import yaml

from nodeforge.cni.base import is_high_kube_version, parse_node_address_detection
from nodeforge.cni.calico import VERSION_TEMPLATES, CalicoRunnable, calico_nics
from nodeforge.component.base import ExtraMetadata
from nodeforge.component.chart import Chart
from nodeforge.errors import ComponentError, UnsupportedVersionError
from nodeforge.models import CNI, Calico, Cluster, IPFamily, Networking, StepAction


def make_cluster(version="v3.26.1", kube_version="v1.27.4", dual_stack=False, offline=False, local_registry="",
                 mode="Overlay-Vxlan-All"):
    pods = ["172.25.0.0/16", "fd85:ee78:d8a6:8607::1:0000/112"] if dual_stack else ["172.25.0.0/16"]
    return Cluster(
        name="demo",
        kubernetes_version=kube_version,
        networking=Networking(
            ip_family=IPFamily.DUAL_STACK if dual_stack else IPFamily.IPV4,
            pod_cidr_blocks=pods,
        ),
        cni=CNI(version=version, offline=offline, local_registry=local_registry, calico=Calico(mode=mode)),
    )


def init(cluster, nodes, **metadata):
    metadata.setdefault("kube_version", cluster.kubernetes_version)
    return CalicoRunnable().init_step(ExtraMetadata(cluster_name=cluster.name, **metadata), cluster, nodes)


@pytest.mark.parametrize("version,expected", [
    ("v1.27.9", False),
    ("v1.28.0", True),
    ("1.29.1", True),
])
def test_is_high_kube_version(version, expected):
    assert is_high_kube_version(version) is expected


@pytest.mark.parametrize("method,expected", [
    ("first-found", ("first-found", "true")),
    ("interface=eth.*", ("interface", "eth.*")),
    ("can-reach=8.8.8.8", ("can-reach", "8.8.8.8")),
    ("", ("", "")),
])
def test_parse_node_address_detection(method, expected):
    detection = parse_node_address_detection(method)
    assert (detection.type, detection.value) == expected


def test_parse_node_address_detection_rejects_unknown():
    with pytest.raises(ComponentError):
        parse_node_address_detection("magic=1")
    with pytest.raises(ComponentError):
        parse_node_address_detection("interface=")


def test_manifest_install_below_1_28(step_nodes):
    calico = init(make_cluster(), step_nodes)
    steps = calico.get_action_steps(StepAction.INSTALL)
    assert [s.name for s in steps] == ["renderCniYaml-cni-calico", "applyCniYaml"]
    assert steps[0].commands[0].identity == "cni-calico-v1-template"
    assert steps[1].commands[0].shell_command[:3] == ("kubectl", "apply", "-f")
    assert calico.get_action_steps(StepAction.UNINSTALL) == []


def test_chart_install_from_1_28(step_nodes):
    calico = init(make_cluster(kube_version="v1.28.2"), step_nodes)
    steps = calico.get_action_steps(StepAction.INSTALL)
    assert [s.name for s in steps] == [
        "loadChart-calico", "renderCniYaml-cni-calico", "installRelease-calico", "applyCniPatch",
    ]
    helm = steps[2].commands[0].shell_command
    assert helm[:4] == ("helm", "upgrade", "--install", "calico")
    assert helm[4].endswith(os.path.join(".calico", "v3.26.1", "charts.tgz"))


def test_offline_without_registry_loads_images(step_nodes):
    calico = init(make_cluster(offline=True), step_nodes)
    install = calico.get_action_steps(StepAction.INSTALL)
    uninstall = calico.get_action_steps(StepAction.UNINSTALL)
    assert install[0].name == "imageLoad-cni-calico"
    assert install[0].commands[0].identity == "cni-calico-v1-step"
    assert [s.name for s in uninstall] == ["removeImage-cni-calico"]
    assert uninstall[0].err_ignore


def test_offline_with_local_registry_skips_images(step_nodes):
    calico = init(make_cluster(offline=True, local_registry="10.0.0.5:5000"), step_nodes)
    assert calico.load_image_steps(step_nodes) == []
    assert calico.uninstall_steps(step_nodes) == []


def test_unsupported_version_yields_no_steps(step_nodes):
    calico = CalicoRunnable(version="v3.99.0", kube_version="v1.27.4")
    with pytest.raises(UnsupportedVersionError, match="v3.99.0"):
        calico.install_steps(step_nodes)
    with pytest.raises(UnsupportedVersionError):
        init(make_cluster(version="v3.99.0"), step_nodes)


def test_dual_stack_needs_ipv6_cidr(step_nodes):
    cluster = make_cluster()
    cluster.networking.ip_family = IPFamily.DUAL_STACK
    with pytest.raises(ComponentError):
        init(cluster, step_nodes)


@pytest.mark.parametrize("version", sorted(VERSION_TEMPLATES))
def test_every_supported_version_renders(version, step_nodes):
    calico = init(make_cluster(version=version, dual_stack=True), step_nodes)
    docs = [d for d in yaml.safe_load_all(calico.render_manifest()) if d]
    kinds = [d["kind"] for d in docs]
    assert "DaemonSet" in kinds and "PodDisruptionBudget" in kinds

    node = next(d for d in docs if d["kind"] == "DaemonSet")
    container = node["spec"]["template"]["spec"]["containers"][0]
    assert container["image"] == f"docker.io/calico/node:{version}"
    env = {e["name"]: e.get("value") for e in container["env"]}
    assert env["CALICO_IPV4POOL_CIDR"] == "172.25.0.0/16"
    assert env["CALICO_IPV4POOL_VXLAN"] == "Always"
    assert env["CALICO_IPV6POOL_CIDR"] == "fd85:ee78:d8a6:8607::1:0000/112"


def test_manifest_uses_local_registry_and_mode(step_nodes):
    calico = init(make_cluster(local_registry="10.0.0.5:5000", mode="Overlay-IPIP-Cross-Subnet"), step_nodes)
    manifest = calico.render_manifest()
    assert "image: 10.0.0.5:5000/calico/node:v3.26.1" in manifest
    docs = [d for d in yaml.safe_load_all(manifest) if d]
    config = next(d for d in docs if d["kind"] == "ConfigMap")
    assert config["data"]["calico_backend"] == "bird"


@pytest.mark.parametrize("kubelet_dir,expected", [
    ("/custom/kubelet", "/custom/kubelet"),
    ("", "/var/lib/kubelet"),
])
def test_manifest_kubelet_data_dir(kubelet_dir, expected):
    calico = CalicoRunnable(version="v3.26.1", pod_ipv4_cidr="10.244.0.0/16", kubelet_data_dir=kubelet_dir,
                            mode="Overlay-IPIP-All")
    assert f"{expected}/volumeplugins" in calico.render_manifest()


def test_chart_values(step_nodes):
    calico = init(make_cluster(kube_version="v1.28.2", local_registry="10.0.0.5:5000"), step_nodes)
    values = yaml.safe_load(calico.render_values())
    network = values["installation"]["calicoNetwork"]
    assert values["installation"]["registry"] == "10.0.0.5:5000/"
    assert network["ipPools"][0] == {
        "cidr": "172.25.0.0/16", "encapsulation": "VXLAN", "natOutgoing": "Enabled", "blockSize": 26,
    }
    assert network["nodeAddressAutodetectionV4"] == {"firstFound": True}
    assert network["bgp"] == "Disabled"


def test_render_writes_manifest(options):
    calico = CalicoRunnable(version="v3.22.4", kube_version="v1.25.3", pod_ipv4_cidr="10.244.0.0/16")
    calico.render(options)
    manifest_dir = options.config.paths.manifest_dir
    assert os.listdir(manifest_dir) == ["calico.yaml"]


def test_render_chart_mode_writes_values_and_patch(options):
    calico = CalicoRunnable(version="v3.26.1", kube_version="v1.28.2", pod_ipv4_cidr="10.244.0.0/16")
    calico.render(options)
    manifest_dir = options.config.paths.manifest_dir
    assert sorted(os.listdir(manifest_dir)) == ["calico-patch.yaml", "calico.yaml"]
    with open(os.path.join(manifest_dir, "calico-patch.yaml")) as f:
        patch = yaml.safe_load(f)
    assert patch["spec"]["vxlanEnabled"] is True


def test_install_imports_images(options, runner, downloader):
    CalicoRunnable(version="v3.26.1", offline=True).install(options)
    assert downloader.calls == [("images", "calico", "v3.26.1")]
    assert runner.calls[-1][-3:] == ["images", "import", "/tmp/.calico/v3.26.1/images.tar.gz"]


def test_uninstall_clears_nics(options, fakes, downloader):
    options.runner = fakes.Runner(fail={("ip", "link", "delete", "vxlan.calico"): "Cannot find device"})
    CalicoRunnable(version="v3.26.1", mode="Overlay-Vxlan-All").uninstall(options)
    assert ("remove_images", "calico", "v3.26.1") in downloader.calls
    assert options.runner.calls == [
        ["ip", "link", "delete", "vxlan.calico"],
        ["ip", "link", "delete", "vxlan-v6.calico"],
    ]


def test_calico_nics_by_mode():
    assert calico_nics("Overlay-IPIP-All") == ("tunl0",)
    assert calico_nics("BGP") == ()


def test_cmd_list():
    cmds = CalicoRunnable(namespace="calico-system").cmd_list()
    assert cmds["restart"] == "kubectl rollout restart ds calico-node -n calico-system"


def test_chart_fetch_and_remove(options, downloader):
    chart = Chart(pkg_name="calico", version="v3.26.1")
    assert chart.install(options) == b"/tmp/.calico/v3.26.1/charts.tgz"
    chart.uninstall(options)
    assert downloader.calls == [("chart", "calico", "v3.26.1"), ("remove_chart", "calico", "v3.26.1")]
    assert [s.name for s in chart.uninstall_steps([])] == ["removeChart-calico"]
