"""The RDMA shared device plugin state."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from netopstate.skel import (
    ApiError,
    GroupVersionKind,
    InfoCatalog,
    StateError,
    StateSkel,
    SyncState,
    container_resources_map,
    set_controller_reference,
)

log = logging.getLogger(__name__)

STATE_RDMA_NAME = "state-RDMA-device-plugin"
STATE_RDMA_DESCRIPTION = "RDMA shared device plugin deployed in the cluster"
DEFAULT_NAMESPACE = "nvidia-network-operator"


def _rdma_spec(cr: Optional[Mapping[str, Any]]) -> Optional[dict]:
    if not cr:
        return None
    return (cr.get("spec") or {}).get("rdmaSharedDevicePlugin")


@dataclass
class StateRDMASharedDevicePlugin(StateSkel):
    """Deploys the RDMA shared device plugin DaemonSet."""

    name: str = STATE_RDMA_NAME
    description: str = STATE_RDMA_DESCRIPTION
    namespace: str = DEFAULT_NAMESPACE

    def sync(self, cr: dict, catalog: InfoCatalog) -> SyncState:
        """Bring the cluster in line with the RDMA shared device plugin part of ``cr``."""
        log.info("Sync Custom resource state=%s name=%s", self.name, (cr.get("metadata") or {}).get("name", ""))
        if _rdma_spec(cr) is None:
            return self.handle_state_objects_deletion()
        if catalog.get(InfoCatalog.CLUSTER_TYPE) is None:
            raise StateError("unexpected state, catalog does not provide cluster type info")

        try:
            objs = self.get_manifest_objects(cr, catalog)
        except (StateError, ApiError) as err:
            raise StateError(f"failed to create k8s objects from manifest: {err}") from err
        if not objs:
            return SyncState.NOT_READY

        try:
            self.create_or_update_objs(lambda obj: set_controller_reference(cr, obj), objs)
        except (StateError, ApiError) as err:
            raise StateError(f"failed to create/update objects: {err}") from err
        try:
            waiting = self.handle_stale_state_objects(objs)
        except StateError as err:
            raise StateError(f"failed to handle state stale objects: {err}") from err
        if waiting:
            return SyncState.NOT_READY
        try:
            return self.get_sync_state(objs)
        except StateError as err:
            raise StateError(f"failed to get sync state: {err}") from err

    def watch_sources(self) -> dict:
        """Kinds to watch for this state, keyed by kind name."""
        return {
            "DaemonSet": GroupVersionKind("apps", "v1", "DaemonSet"),
            "ConfigMap": GroupVersionKind("", "v1", "ConfigMap"),
        }

    def get_manifest_objects(self, cr: dict, catalog: InfoCatalog) -> list:
        """Render the RDMA shared device plugin objects for ``cr``."""
        spec = _rdma_spec(cr)
        if spec is None:
            raise StateError("failed to render objects: state spec is nil")
        cluster_info = catalog.get(InfoCatalog.CLUSTER_TYPE)
        if cluster_info is None:
            raise StateError("clusterInfo provider required")

        cr_spec = cr["spec"]
        data = {
            "CrSpec": spec,
            "Tolerations": cr_spec.get("tolerations"),
            "NodeAffinity": cr_spec.get("nodeAffinity"),
            "DeployInitContainer": cr_spec.get("ofedDriver") is not None,
            "RuntimeSpec": {
                "Namespace": self.namespace,
                "IsOpenshift": bool(cluster_info.is_openshift()),
                "ContainerResources": container_resources_map(spec.get("containerResources")),
            },
        }
        log.debug("Rendering objects data=%s", data)
        try:
            objs = list(self.renderer.render_objects(data))
        except StateError as err:
            raise StateError(f"failed to render objects: {err}") from err
        log.debug("Rendered objects: %s", objs)
        return objs