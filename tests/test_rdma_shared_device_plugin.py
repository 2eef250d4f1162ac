import copy

import pytest

from netopstate.rdma_shared_device_plugin import StateRDMASharedDevicePlugin
from netopstate.skel import (
    AlreadyExistsError,
    GroupVersionKind,
    InfoCatalog,
    NotFoundError,
    StateError,
    SyncState,
    gvk_of,
)

NAMESPACE = "nvidia-network-operator"
DS_GVK = GroupVersionKind("apps", "v1", "DaemonSet")


class FakeClient:
    def __init__(self):
        self.objects = {}

    @staticmethod
    def _key(obj):
        meta = obj.get("metadata") or {}
        return gvk_of(obj), meta.get("namespace", ""), meta.get("name", "")

    def get(self, gvk, namespace, name):
        try:
            return copy.deepcopy(self.objects[(gvk, namespace, name)])
        except KeyError:
            raise NotFoundError(name) from None

    def create(self, obj):
        key = self._key(obj)
        if key in self.objects:
            raise AlreadyExistsError(key[2])
        self.objects[key] = copy.deepcopy(obj)

    def update(self, obj):
        key = self._key(obj)
        if key not in self.objects:
            raise NotFoundError(key[2])
        self.objects[key] = copy.deepcopy(obj)

    def delete(self, obj):
        key = self._key(obj)
        if key not in self.objects:
            raise NotFoundError(key[2])
        del self.objects[key]

    def list(self, gvk, labels):
        result = []
        for (kind, _, _), obj in self.objects.items():
            obj_labels = (obj.get("metadata") or {}).get("labels") or {}
            if kind == gvk and all(obj_labels.get(k) == v for k, v in labels.items()):
                result.append(copy.deepcopy(obj))
        return result


def _obj(api_version, kind, name, namespace=""):
    meta = {"name": name}
    if namespace:
        meta["namespace"] = namespace
    return {"apiVersion": api_version, "kind": kind, "metadata": meta}


class RdmaRenderer:
    """Renders the DaemonSet, plus the RBAC objects on Openshift."""

    def __init__(self):
        self.calls = []

    def render_objects(self, data):
        self.calls.append(data)
        ns = data["RuntimeSpec"]["Namespace"]
        spec = data["CrSpec"]
        ds = _obj("apps/v1", "DaemonSet", "rdma-shared-dp-ds", ns)
        ds["spec"] = {"template": {"spec": {
            "containers": [{"image": f"{spec['repository']}/{spec['image']}:{spec['version']}"}],
        }}}
        objs = [ds]
        if data["RuntimeSpec"]["IsOpenshift"]:
            objs += [
                _obj("v1", "ServiceAccount", "rdma-shared", ns),
                _obj("rbac.authorization.k8s.io/v1", "Role", "rdma-shared", ns),
                _obj("rbac.authorization.k8s.io/v1", "RoleBinding", "rdma-shared", ns),
            ]
        return objs


class ClusterType:
    def __init__(self, openshift=False):
        self.openshift = openshift

    def is_openshift(self):
        return self.openshift


def make_catalog(openshift=False):
    catalog = InfoCatalog()
    catalog.add(InfoCatalog.CLUSTER_TYPE, ClusterType(openshift))
    return catalog


def rdma_cr():
    return {
        "apiVersion": "mellanox.com/v1alpha1",
        "kind": "NicClusterPolicy",
        "metadata": {"name": "nic-cluster-policy", "uid": "uid-1"},
        "spec": {
            "rdmaSharedDevicePlugin": {
                "image": "myimage",
                "repository": "myrepo",
                "version": "myversion",
                "containerResources": [
                    {"name": "rdma-shared-dp", "requests": {"cpu": "1"}, "limits": {"cpu": "9"}},
                ],
            },
        },
    }


@pytest.fixture
def env():
    client = FakeClient()
    renderer = RdmaRenderer()
    state = StateRDMASharedDevicePlugin(client=client, renderer=renderer)
    return state, client, renderer


def test_renders_kubernetes_manifests(env):
    state, _, renderer = env
    objs = state.get_manifest_objects(rdma_cr(), make_catalog())
    assert len(objs) == 1
    assert objs[0]["kind"] == "DaemonSet"
    assert objs[0]["spec"]["template"]["spec"]["containers"][0]["image"] == "myrepo/myimage:myversion"
    runtime = renderer.calls[-1]["RuntimeSpec"]
    assert runtime["Namespace"] == NAMESPACE
    assert runtime["IsOpenshift"] is False
    assert runtime["ContainerResources"] == {
        "rdma-shared-dp": {"requests": {"cpu": "1"}, "limits": {"cpu": "9"}}
    }


def test_renders_openshift_manifests(env):
    state, _, renderer = env
    objs = state.get_manifest_objects(rdma_cr(), make_catalog(openshift=True))
    assert len(objs) == 4
    assert renderer.calls[-1]["RuntimeSpec"]["IsOpenshift"] is True


@pytest.mark.parametrize("ofed, expected", [(None, False), ({"version": "1"}, True)])
def test_deploy_init_container_follows_ofed(env, ofed, expected):
    state, _, renderer = env
    cr = rdma_cr()
    if ofed is not None:
        cr["spec"]["ofedDriver"] = ofed
    state.get_manifest_objects(cr, make_catalog())
    assert renderer.calls[-1]["DeployInitContainer"] is expected


def test_sync_without_errors(env):
    state, client, _ = env
    assert state.sync(rdma_cr(), make_catalog()) == SyncState.NOT_READY
    ds = client.get(DS_GVK, NAMESPACE, "rdma-shared-dp-ds")
    assert ds["metadata"]["labels"]["network-operator.state"] == "state-RDMA-device-plugin"


def test_sync_ready_when_daemonset_rolled_out(env):
    state, client, _ = env
    cr = rdma_cr()
    catalog = make_catalog()
    state.sync(cr, catalog)
    client.objects[(DS_GVK, NAMESPACE, "rdma-shared-dp-ds")]["status"] = {
        "desiredNumberScheduled": 2,
        "numberAvailable": 2,
        "updatedNumberScheduled": 2,
    }
    assert state.sync(cr, catalog) == SyncState.READY


def test_sync_fails_without_cluster_type(env):
    state, _, _ = env
    with pytest.raises(StateError, match="cluster type info"):
        state.sync(rdma_cr(), InfoCatalog())


def test_sync_nil_spec_ignored(env):
    state, _, _ = env
    cr = rdma_cr()
    del cr["spec"]["rdmaSharedDevicePlugin"]
    assert state.sync(cr, make_catalog()) == SyncState.IGNORE


def test_get_manifest_objects_requires_spec(env):
    state, _, _ = env
    cr = rdma_cr()
    del cr["spec"]["rdmaSharedDevicePlugin"]
    with pytest.raises(StateError, match="state spec is nil"):
        state.get_manifest_objects(cr, make_catalog())


def test_get_manifest_objects_requires_cluster_info(env):
    state, _, _ = env
    with pytest.raises(StateError, match="clusterInfo provider required"):
        state.get_manifest_objects(rdma_cr(), InfoCatalog())


def test_watch_sources(env):
    state, _, _ = env
    assert state.watch_sources() == {
        "DaemonSet": GroupVersionKind("apps", "v1", "DaemonSet"),
        "ConfigMap": GroupVersionKind("", "v1", "ConfigMap"),
    }