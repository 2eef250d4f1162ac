"""Common machinery shared by all operator states.

Objects are handled in their unstructured form: plain dictionaries shaped
like Kubernetes JSON documents (``apiVersion``, ``kind``, ``metadata``, ...).
"""

from __future__ import annotations

import copy
import enum
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol

log = logging.getLogger(__name__)

STATE_LABEL = "network-operator.state"
REVISION_ANNOTATION = "network-operator.revision"

Unstructured = dict


class SyncState(str, enum.Enum):
    """Outcome of a state sync."""

    READY = "ready"
    NOT_READY = "notReady"
    IGNORE = "ignore"
    ERROR = "error"


@dataclass(frozen=True)
class GroupVersionKind:
    """API group, version and kind of an object."""

    group: str
    version: str
    kind: str

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version


class ApiError(Exception):
    """An error reported by the cluster API."""


class NotFoundError(ApiError):
    """The requested object does not exist."""


class AlreadyExistsError(ApiError):
    """The object to create exists already."""


class NoKindMatchError(ApiError):
    """The cluster does not know the requested kind."""


class StateError(Exception):
    """A state failed to reach or inspect its desired objects."""


class Client(Protocol):
    def get(self, gvk: GroupVersionKind, namespace: str, name: str) -> dict: ...

    def create(self, obj: dict) -> None: ...

    def update(self, obj: dict) -> None: ...

    def delete(self, obj: dict) -> None: ...

    def list(self, gvk: GroupVersionKind, labels: Mapping[str, str]) -> list: ...


class Renderer(Protocol):
    def render_objects(self, data: Any) -> list: ...


class InfoCatalog:
    """Registry of information providers handed to states during sync."""

    STATIC_CONFIG = "static-config"
    CLUSTER_TYPE = "cluster-type"
    NODE_INFO = "node-info"
    DOCA_DRIVER_IMAGE = "doca-driver-image"

    def __init__(self) -> None:
        self._providers: dict[str, Any] = {}

    def add(self, info_type: str, provider: Any) -> None:
        self._providers[info_type] = provider

    def get(self, info_type: str) -> Any:
        """Return the provider registered for ``info_type`` or None."""
        return self._providers.get(info_type)


class StateObjects:
    """A set of object names grouped by their GroupVersionKind."""

    def __init__(self) -> None:
        self._by_kind: dict[GroupVersionKind, set[tuple[str, str]]] = {}

    def add(self, gvk: GroupVersionKind, namespace: str, name: str) -> None:
        self._by_kind.setdefault(gvk, set()).add((namespace, name))

    def exists(self, gvk: GroupVersionKind, namespace: str, name: str) -> bool:
        return (namespace, name) in self._by_kind.get(gvk, ())


_SUPPORTED_GVKS = (
    GroupVersionKind("", "v1", "ServiceAccount"),
    GroupVersionKind("", "v1", "ConfigMap"),
    GroupVersionKind("apps", "v1", "DaemonSet"),
    GroupVersionKind("apps", "v1", "Deployment"),
    GroupVersionKind("", "v1", "Service"),
    GroupVersionKind("apiextensions.k8s.io", "v1", "CustomResourceDefinition"),
    GroupVersionKind("rbac.authorization.k8s.io", "v1", "ClusterRole"),
    GroupVersionKind("rbac.authorization.k8s.io", "v1", "ClusterRoleBinding"),
    GroupVersionKind("rbac.authorization.k8s.io", "v1", "Role"),
    GroupVersionKind("rbac.authorization.k8s.io", "v1", "RoleBinding"),
    GroupVersionKind("admissionregistration.k8s.io", "v1", "ValidatingWebhookConfiguration"),
    GroupVersionKind("k8s.cni.cncf.io", "v1", "NetworkAttachmentDefinition"),
    GroupVersionKind("batch", "v1", "CronJob"),
    GroupVersionKind("cert-manager.io", "v1", "Issuer"),
    GroupVersionKind("cert-manager.io", "v1", "Certificate"),
)


def supported_gvks() -> list[GroupVersionKind]:
    """Kinds whose objects a state knows how to find and delete."""
    return list(_SUPPORTED_GVKS)


def gvk_of(obj: Mapping[str, Any]) -> GroupVersionKind:
    """Return the GroupVersionKind of an unstructured object."""
    group, _, version = str(obj.get("apiVersion", "")).rpartition("/")
    return GroupVersionKind(group, version, str(obj.get("kind", "")))


def _metadata(obj: dict) -> dict:
    meta = obj.get("metadata")
    if meta is None:
        meta = obj["metadata"] = {}
    return meta


def _name(obj: Mapping[str, Any]) -> str:
    return (obj.get("metadata") or {}).get("name", "")


def _namespace(obj: Mapping[str, Any]) -> str:
    return (obj.get("metadata") or {}).get("namespace", "")


def is_daemonset_ready(obj: Mapping[str, Any]) -> bool:
    """True when the DaemonSet has pods scheduled, all available and updated."""
    status = obj.get("status") or {}
    if not isinstance(status, Mapping):
        raise StateError("failed to read daemonset status")
    try:
        desired = int(status.get("desiredNumberScheduled", 0))
        available = int(status.get("numberAvailable", 0))
        updated = int(status.get("updatedNumberScheduled", 0))
    except (TypeError, ValueError) as err:
        raise StateError(f"failed to read daemonset status: {err}") from err
    # A zero desired count means the DaemonSet controller has not processed it yet.
    return desired != 0 and desired == available and updated == available


def set_controller_reference(owner: Mapping[str, Any], obj: dict) -> None:
    """Make ``owner`` the controlling owner of ``obj``."""
    owner_meta = owner.get("metadata") or {}
    owner_ns = owner_meta.get("namespace", "")
    if owner_ns and owner_ns != _namespace(obj):
        raise StateError("cross-namespace owner references are disallowed")
    owner_gvk = gvk_of(owner)
    ref = {
        "apiVersion": owner.get("apiVersion", ""),
        "kind": owner.get("kind", ""),
        "name": owner_meta.get("name", ""),
        "uid": owner_meta.get("uid", ""),
        "blockOwnerDeletion": True,
        "controller": True,
    }

    def same_owner(existing: Mapping[str, Any]) -> bool:
        return (
            gvk_of(existing).group == owner_gvk.group
            and existing.get("kind") == ref["kind"]
            and existing.get("name") == ref["name"]
        )

    meta = _metadata(obj)
    refs = [dict(r) for r in meta.get("ownerReferences") or []]
    for existing in refs:
        if existing.get("controller") and not same_owner(existing):
            raise StateError(
                f"object {_namespace(obj)}/{_name(obj)} is already owned by another "
                f"{existing.get('kind')} controller {existing.get('name')}"
            )
    refs = [r for r in refs if not same_owner(r)]
    refs.append(ref)
    meta["ownerReferences"] = refs


def container_resources_map(resources: Optional[Iterable[Mapping[str, Any]]]) -> dict:
    """Index container resource requirements by container name."""
    return {
        entry["name"]: {
            "requests": dict(entry.get("requests") or {}),
            "limits": dict(entry.get("limits") or {}),
        }
        for entry in resources or ()
    }


def _calculate_revision(obj: Mapping[str, Any]) -> str:
    content = copy.deepcopy(dict(obj))
    annotations = (content.get("metadata") or {}).get("annotations")
    if annotations:
        annotations.pop(REVISION_ANNOTATION, None)
    try:
        encoded = json.dumps(content, sort_keys=True, default=str)
    except (TypeError, ValueError) as err:
        raise StateError(f"failed to calculate object revision: {err}") from err
    return hashlib.sha256(encoded.encode()).hexdigest()[:16]


def _get_revision(obj: Mapping[str, Any]) -> str:
    return ((obj.get("metadata") or {}).get("annotations") or {}).get(REVISION_ANNOTATION, "")


def _set_revision(obj: dict, revision: str) -> None:
    meta = _metadata(obj)
    annotations = dict(meta.get("annotations") or {})
    annotations[REVISION_ANNOTATION] = revision
    meta["annotations"] = annotations


@dataclass
class StateSkel:
    """Behaviour shared by the states: creating, updating, pruning and checking objects."""

    name: str
    description: str = ""
    client: Any = None
    renderer: Any = None

    def set_renderer(self, renderer: Any) -> None:
        self.renderer = renderer

    def _get_obj(self, obj: Mapping[str, Any]) -> dict:
        log.info("Get Object namespace=%s name=%s", _namespace(obj), _name(obj))
        try:
            return self.client.get(gvk_of(obj), _namespace(obj), _name(obj))
        except NotFoundError:
            log.info("Object does not exist")
            raise

    def _check_delete_supported(self, obj: Mapping[str, Any]) -> None:
        gvk = gvk_of(obj)
        if gvk not in _SUPPORTED_GVKS:
            log.warning(
                "Object will not be deleted if needed namespace=%s name=%s gvk=%s",
                _namespace(obj), _name(obj), gvk,
            )

    def _create_obj(self, obj: dict) -> None:
        self._check_delete_supported(obj)
        log.info("Creating Object namespace=%s name=%s", _namespace(obj), _name(obj))
        try:
            self.client.create(copy.deepcopy(obj))
        except AlreadyExistsError:
            log.info("Object already exists")
            raise
        log.info("Object created successfully")

    def _update_obj(self, obj: dict) -> None:
        log.info("Updating Object namespace=%s name=%s", _namespace(obj), _name(obj))
        try:
            self.client.update(copy.deepcopy(obj))
        except ApiError as err:
            raise StateError(f"failed to update resource: {err}") from err
        log.info("Object updated successfully")

    def _add_state_labels(self, obj: dict) -> None:
        meta = _metadata(obj)
        labels = dict(meta.get("labels") or {})
        labels[STATE_LABEL] = self.name
        meta["labels"] = labels

    def create_or_update_objs(
        self, set_reference: Callable[[dict], None], objs: Iterable[dict]
    ) -> None:
        """Create missing objects and update those whose revision changed."""
        for desired in objs:
            log.info("Handling manifest object kind=%s name=%s", desired.get("kind"), _name(desired))
            try:
                set_reference(desired)
            except Exception as err:
                raise StateError(f"failed to set controller reference for object: {err}") from err
            self._add_state_labels(desired)
            desired_rev = _calculate_revision(desired)
            _set_revision(desired, desired_rev)

            try:
                current = self._get_obj(desired)
            except NotFoundError:
                self._create_obj(desired)
                continue
            current_rev = _get_revision(current)
            if current_rev and current_rev == desired_rev:
                log.info("Object is already in sync")
                continue
            self.merge_objects(desired, current)
            self._update_obj(desired)

    def handle_state_objects_deletion(self) -> SyncState:
        """Remove every object of this state; NOT_READY while removal is in progress."""
        log.info("State spec in CR is nil, deleting existing objects if needed state=%s", self.name)
        try:
            found = self.delete_state_related_objects(StateObjects())
        except ApiError as err:
            raise StateError(f"failed to delete k8s objects: {err}") from err
        if found:
            log.info("State deleting objects in progress state=%s", self.name)
            return SyncState.NOT_READY
        return SyncState.IGNORE

    def handle_stale_state_objects(self, desired_objs: Iterable[Mapping[str, Any]]) -> bool:
        """Delete state objects not among ``desired_objs``; True while removal is in progress."""
        log.info("check state for stale objects state=%s", self.name)
        to_keep = StateObjects()
        for obj in desired_objs:
            to_keep.add(gvk_of(obj), _namespace(obj), _name(obj))
        try:
            found = self.delete_state_related_objects(to_keep)
        except ApiError as err:
            raise StateError(f"failed to delete k8s objects: {err}") from err
        if found:
            log.info("removal of the state stale objects is in progress state=%s", self.name)
        else:
            log.info("no stale objects detected state=%s", self.name)
        return found

    def delete_state_related_objects(self, objects_to_keep: StateObjects) -> bool:
        """Delete labelled objects of this state except those kept; True if any were found."""
        labels = {STATE_LABEL: self.name}
        found = False
        for gvk in _SUPPORTED_GVKS:
            try:
                items = self.client.list(gvk, labels)
            except NoKindMatchError:
                continue
            for item in items:
                if objects_to_keep.exists(gvk, _namespace(item), _name(item)):
                    continue
                found = True
                if not (item.get("metadata") or {}).get("deletionTimestamp"):
                    self.client.delete(item)
        return found

    def merge_objects(self, updated: dict, current: Mapping[str, Any]) -> None:
        """Carry server-owned fields of ``current`` over into ``updated``."""
        resource_version = (current.get("metadata") or {}).get("resourceVersion", "")
        _metadata(updated)["resourceVersion"] = resource_version
        gvk = gvk_of(updated)
        if gvk.group == "" and gvk.kind == "ServiceAccount":
            for key in ("secrets", "imagePullSecrets"):
                if key not in current:
                    continue
                value = current[key]
                if value is not None and not isinstance(value, list):
                    raise StateError(f".{key} accessor error: expected list, got {type(value).__name__}")
                updated[key] = copy.deepcopy(value)

    def get_sync_state(self, objs: Iterable[Mapping[str, Any]]) -> SyncState:
        """READY when every object exists and DaemonSets are fully rolled out."""
        log.info("Checking related object states")
        for obj in objs:
            try:
                found = self._get_obj(obj)
            except NotFoundError:
                log.info("Object is not ready kind=%s name=%s", obj.get("kind"), _name(obj))
                return SyncState.NOT_READY
            except ApiError as err:
                raise StateError(f"failed to get object: {err}") from err
            if found.get("kind") == "DaemonSet" and not is_daemonset_ready(found):
                log.info("Object is not ready kind=%s name=%s", obj.get("kind"), _name(obj))
                return SyncState.NOT_READY
            log.info("Object is ready kind=%s name=%s", obj.get("kind"), _name(obj))
        return SyncState.READY