"""The MacvlanNetwork state: one NetworkAttachmentDefinition per MacvlanNetwork resource."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from netopstate.skel import (
    ApiError,
    GroupVersionKind,
    InfoCatalog,
    NotFoundError,
    StateError,
    StateSkel,
    SyncState,
    set_controller_reference,
)

log = logging.getLogger(__name__)

STATE_MACVLAN_NETWORK_NAME = "state-Macvlan-Network"
STATE_MACVLAN_NETWORK_DESCRIPTION = "Macvlan net-attach-def CR deployed in cluster"
LAST_NETWORK_NAMESPACE_ANNOTATION = "operator.macvlannetwork.mellanox.com/last-network-namespace"

MACVLAN_NETWORK_GVK = GroupVersionKind("mellanox.com", "v1alpha1", "MacvlanNetwork")
NETWORK_ATTACHMENT_DEFINITION_GVK = GroupVersionKind("k8s.cni.cncf.io", "v1", "NetworkAttachmentDefinition")


def _meta(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    return obj.get("metadata") or {}


def _last_network_namespace(cr: Mapping[str, Any]) -> tuple[str, bool]:
    annotations = _meta(cr).get("annotations") or {}
    if LAST_NETWORK_NAMESPACE_ANNOTATION in annotations:
        return annotations[LAST_NETWORK_NAMESPACE_ANNOTATION], True
    return "", False


@dataclass
class StateMacvlanNetwork(StateSkel):
    """Keeps the NetworkAttachmentDefinition of a MacvlanNetwork in its desired namespace."""

    name: str = STATE_MACVLAN_NETWORK_NAME
    description: str = STATE_MACVLAN_NETWORK_DESCRIPTION

    def sync(self, cr: dict, catalog: InfoCatalog) -> SyncState:
        """Bring the cluster in line with the MacvlanNetwork ``cr``."""
        log.info("Sync Custom resource state=%s name=%s", self.name, _meta(cr).get("name", ""))

        try:
            objs = self._render(cr)
        except StateError as err:
            raise StateError(f"failed to render MacvlanNetwork: {err}") from err
        if not objs:
            raise StateError("no rendered objects found")

        net_att_def = objs[0]
        if net_att_def.get("kind") != "NetworkAttachmentDefinition":
            raise StateError("no NetworkAttachmentDefinition object found")

        try:
            self._handle_namespace_change(cr, net_att_def)
        except ApiError as err:
            raise StateError(f"Couldn't delete NetworkAttachmentDefinition CR: {err}") from err

        try:
            self.create_or_update_objs(lambda obj: set_controller_reference(cr, obj), objs)
        except (StateError, ApiError) as err:
            raise StateError(f"failed to create/update objects: {err}") from err
        try:
            sync_state = self.get_sync_state(objs)
        except StateError as err:
            raise StateError(f"failed to get sync state: {err}") from err

        self._update_net_att_def_namespace(cr, net_att_def)

        try:
            self._get_obj(net_att_def)
        except ApiError as err:
            raise StateError(f"failed to get NetworkAttachmentDefinition: {err}") from err
        return sync_state

    def watch_sources(self) -> dict:
        """Kinds to watch for this state, keyed by kind name."""
        return {
            "MacvlanNetwork": MACVLAN_NETWORK_GVK,
            "NetworkAttachmentDefinition": NETWORK_ATTACHMENT_DEFINITION_GVK,
        }

    def render_data(self, cr: Mapping[str, Any]) -> dict:
        """Template data for the NetworkAttachmentDefinition of ``cr``."""
        spec = cr.get("spec") or {}
        ipam = spec.get("ipam") or ""
        return {
            "NetworkName": _meta(cr).get("name", ""),
            "NetworkNamespace": spec.get("networkNamespace") or "default",
            "Master": spec.get("master", ""),
            "Mode": spec.get("mode", ""),
            "Mtu": spec.get("mtu", 0),
            "Ipam": '"ipam":' + "".join(ipam.split()) if ipam else '"ipam":{}',
        }

    def _render(self, cr: Mapping[str, Any]) -> list:
        data = self.render_data(cr)
        log.debug("Rendering objects data=%s", data)
        try:
            objs = list(self.renderer.render_objects(data))
        except StateError as err:
            raise StateError(f"failed to render objects: {err}") from err
        log.debug("Rendered objects: %s", objs)
        return objs

    def _handle_namespace_change(self, cr: Mapping[str, Any], net_att_def: Mapping[str, Any]) -> None:
        last_ns, exists = _last_network_namespace(cr)
        if not exists or _meta(net_att_def).get("namespace", "") == last_ns:
            return
        stale = {
            "apiVersion": NETWORK_ATTACHMENT_DEFINITION_GVK.api_version,
            "kind": NETWORK_ATTACHMENT_DEFINITION_GVK.kind,
            "metadata": {"name": _meta(cr).get("name", ""), "namespace": last_ns},
        }
        try:
            self.client.delete(stale)
        except NotFoundError:
            pass

    def _update_net_att_def_namespace(self, cr: dict, net_att_def: Mapping[str, Any]) -> None:
        last_ns, exists = _last_network_namespace(cr)
        current_ns = _meta(net_att_def).get("namespace", "")
        if exists and current_ns == last_ns:
            return
        cr.setdefault("metadata", {})["annotations"] = {LAST_NETWORK_NAMESPACE_ANNOTATION: current_ns}
        try:
            self.client.update(cr)
        except ApiError as err:
            raise StateError(f"failed to update MacvlanNetwork annotations: {err}") from err