"""The OFED driver state: one driver DaemonSet per pool of nodes with Mellanox NICs."""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Mapping, Optional

from netopstate.ofed_support import (
    OCP_TRUSTED_CA_BUNDLE_FILE_NAME,
    OCP_TRUSTED_CA_CONFIG_MAP_NAME,
    AdditionalVolumeMounts,
    NodePool,
    ProxyConfig,
    cert_config_path,
    driver_image_name,
    init_container_config,
    merge_with_default_envs,
    precompiled_tag,
    repo_config_path,
    set_env_from_cluster_wide_proxy,
    set_probes_defaults,
    string_hash,
)
from netopstate.skel import (
    ApiError,
    GroupVersionKind,
    InfoCatalog,
    NoKindMatchError,
    NotFoundError,
    StateError,
    StateObjects,
    StateSkel,
    SyncState,
    container_resources_map,
    gvk_of,
    set_controller_reference,
)

log = logging.getLogger(__name__)

STATE_OFED_NAME = "state-OFED"
STATE_OFED_DESCRIPTION = "OFED driver deployed in the cluster"
DEFAULT_NAMESPACE = "nvidia-network-operator"

NODE_LABEL_MLNX_NIC = "feature.node.kubernetes.io/pci-15b3.present"
NODE_LABEL_OSTREE_VERSION = "feature.node.kubernetes.io/system-os_release.OSTREE_VERSION"

PROXY_GVK = GroupVersionKind("config.openshift.io", "v1", "Proxy")
CONFIG_MAP_GVK = GroupVersionKind("", "v1", "ConfigMap")
IMAGE_STREAM_GVK = GroupVersionKind("image.openshift.io", "v1", "ImageStream")
DAEMONSET_GVK = GroupVersionKind("apps", "v1", "DaemonSet")

DTK_IMAGE_STREAM_NAME = "driver-toolkit"
DTK_IMAGE_STREAM_NAMESPACE = "openshift"


def _ofed_spec(cr: Optional[Mapping[str, Any]]) -> Optional[dict]:
    if not cr:
        return None
    return (cr.get("spec") or {}).get("ofedDriver")


def _cr_name(cr: Mapping[str, Any]) -> str:
    return (cr.get("metadata") or {}).get("name", "")


def _ref_name(ref: Optional[Mapping[str, Any]]) -> str:
    return (ref or {}).get("name", "") if ref else ""


@dataclass
class StateOFED(StateSkel):
    """Deploys the OFED driver container on every node pool with Mellanox NICs."""

    name: str = STATE_OFED_NAME
    description: str = STATE_OFED_DESCRIPTION
    namespace: str = DEFAULT_NAMESPACE
    init_container_image: str = ""
    use_dtk: bool = False
    ca_check_interval: float = 0.03
    ca_check_timeout: float = 15.0

    def sync(self, cr: dict, catalog: InfoCatalog) -> SyncState:
        """Bring the cluster in line with the OFED part of ``cr``."""
        log.info("Sync Custom resource state=%s name=%s", self.name, _cr_name(cr))
        if _ofed_spec(cr) is None:
            return self.handle_state_objects_deletion()

        if catalog.get(InfoCatalog.NODE_INFO) is None:
            raise StateError("unexpected state, catalog does not provide node information")
        cluster_info = catalog.get(InfoCatalog.CLUSTER_TYPE)
        if cluster_info is None:
            raise StateError("unexpected state, catalog does not provide cluster type info")

        if cluster_info.is_openshift():
            try:
                self.handle_openshift_cluster_wide_proxy_config(cr)
            except StateError as err:
                raise StateError(f"failed to handle Openshift cluster-wide proxy settings: {err}") from err

        try:
            objs = self.get_manifest_objects(cr, catalog)
        except (StateError, ApiError) as err:
            raise StateError(f"failed to create k8s objects from manifest: {err}") from err
        if not objs:
            # Most likely no Mellanox hardware was found; retry later.
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
        return {"DaemonSet": DAEMONSET_GVK}

    def get_manifest_objects(self, cr: dict, catalog: InfoCatalog) -> list:
        """Render the objects of every node pool, without duplicates."""
        spec = _ofed_spec(cr)
        if spec is None:
            raise StateError("failed to render objects: state spec is nil")

        node_info = catalog.get(InfoCatalog.NODE_INFO)
        if node_info is None:
            raise StateError("nodeInfo provider required")
        cluster_info = catalog.get(InfoCatalog.CLUSTER_TYPE)
        if cluster_info is None:
            raise StateError("clusterInfo provider required")
        doca = catalog.get(InfoCatalog.DOCA_DRIVER_IMAGE)
        if doca is None:
            raise StateError("docaProvider provider required")

        pools = list(node_info.get_node_pools({NODE_LABEL_MLNX_NIC: "true"}))
        if not pools:
            log.info("No nodes with Mellanox NICs where found in the cluster.")
            return []

        set_probes_defaults(spec)
        spec["env"] = merge_with_default_envs(spec.get("env"))

        use_dtk = cluster_info.is_openshift() and self.use_dtk
        seen = StateObjects()
        objs: list = []
        for pool in pools:
            try:
                rendered = self._render_pool(cr, pool, use_dtk, cluster_info, doca)
            except (StateError, ApiError) as err:
                raise StateError(f"failed to render objects: {err}") from err
            for obj in rendered:
                meta = obj.get("metadata") or {}
                key = (gvk_of(obj), meta.get("namespace", ""), meta.get("name", ""))
                if not seen.exists(*key):
                    seen.add(*key)
                    objs.append(obj)
        log.debug("Rendered objects: %s", objs)
        return objs

    def _render_pool(
        self, cr: dict, pool: NodePool, use_dtk: bool, cluster_info: Any, doca: Any
    ) -> list:
        spec = cr["spec"]["ofedDriver"]
        tag = precompiled_tag(spec.get("version", ""), pool)
        precompiled_exists = bool(doca.tag_exists(tag))
        log.debug("Precompiled tag=%s found=%s", tag, precompiled_exists)
        if not precompiled_exists and spec.get("forcePrecompiled"):
            raise StateError(f"ForcePrecompiled is enabled and precompiled tag was not found: {tag}")
        if precompiled_exists:
            use_dtk = False

        dtk_image = ""
        if use_dtk:
            if not pool.rhcos_version:
                raise StateError(f"required NFD Label missing: {NODE_LABEL_OSTREE_VERSION}")
            try:
                dtk_image = self.driver_toolkit_image(pool.rhcos_version)
            except (StateError, ApiError) as err:
                raise StateError(f"failed to get OpenShift DTK image : {err}") from err

        mounts = AdditionalVolumeMounts()
        self._handle_cert_config(spec, pool.os_name, mounts)
        self._handle_repo_config(spec, pool.os_name, mounts)
        mounts.add_subscription_volumes(pool.os_name, pool.container_runtime)

        init_cfg = init_container_config(spec.get("ofedUpgradePolicy"), self.init_container_image)
        data = {
            "CrSpec": spec,
            "Tolerations": cr["spec"].get("tolerations"),
            "NodeAffinity": cr["spec"].get("nodeAffinity"),
            "RuntimeSpec": {
                "Namespace": self.namespace,
                "CPUArch": pool.arch,
                "OSName": pool.os_name,
                "OSVer": pool.os_version,
                "Kernel": pool.kernel,
                "KernelHash": string_hash(pool.kernel),
                "MOFEDImageName": driver_image_name(spec, pool, precompiled_exists),
                "InitContainerConfig": {
                    "InitContainerEnable": init_cfg.enable,
                    "InitContainerImageName": init_cfg.image_name,
                    "SafeLoadEnable": init_cfg.safe_load_enable,
                    "SafeLoadAnnotation": init_cfg.safe_load_annotation,
                },
                "IsOpenshift": bool(cluster_info.is_openshift()),
                "ContainerResources": container_resources_map(spec.get("containerResources")),
                "UseDtk": use_dtk,
                "DtkImageName": dtk_image,
                "RhcosVersion": pool.rhcos_version,
            },
            "AdditionalVolumeMounts": asdict(mounts),
        }
        log.debug("Rendering objects data=%s", data)
        return list(self.renderer.render_objects(data))

    def _handle_additional_mounts(
        self, mounts: AdditionalVolumeMounts, config_map_name: str, dest_dir: str
    ) -> None:
        try:
            config_map = self.client.get(CONFIG_MAP_GVK, self.namespace, config_map_name)
        except ApiError as err:
            raise StateError(f"could not get ConfigMap {config_map_name} from client: {err}") from err
        try:
            mounts.from_config_map(config_map, dest_dir)
        except (KeyError, TypeError, AttributeError) as err:
            raise StateError(f"could not create volume mounts for ConfigMap: {config_map_name}") from err

    def _handle_cert_config(self, spec: Mapping[str, Any], os_name: str, mounts: AdditionalVolumeMounts) -> None:
        name = _ref_name(spec.get("certConfig"))
        if not name:
            return
        try:
            dest = cert_config_path(os_name)
        except StateError as err:
            raise StateError(
                f"failed to get destination directory for custom TLS certificates config: {err}"
            ) from err
        try:
            self._handle_additional_mounts(mounts, name, dest)
        except StateError as err:
            raise StateError(f"failed to mount volumes for custom TLS certificates: {err}") from err

    def _handle_repo_config(self, spec: Mapping[str, Any], os_name: str, mounts: AdditionalVolumeMounts) -> None:
        name = _ref_name(spec.get("repoConfig"))
        if not name:
            return
        try:
            dest = repo_config_path(os_name)
        except StateError as err:
            raise StateError(f"failed to get destination directory for custom repo config: {err}") from err
        try:
            self._handle_additional_mounts(mounts, name, dest)
        except StateError as err:
            raise StateError(
                f"failed to mount volumes for custom repositories configuration: {err}"
            ) from err

    def _read_openshift_proxy_config(self) -> Optional[ProxyConfig]:
        try:
            proxy = self.client.get(PROXY_GVK, "", "cluster")
        except (NoKindMatchError, NotFoundError):
            # Not an Openshift cluster, or no cluster-wide proxy defined.
            return None
        except ApiError as err:
            raise StateError(f"failed to read Cluster Wide proxy settings: {err}") from err
        spec = proxy.get("spec") or {}
        return ProxyConfig(
            http_proxy=spec.get("httpProxy", "") or "",
            https_proxy=spec.get("httpsProxy", "") or "",
            no_proxy=spec.get("noProxy", "") or "",
            trusted_ca=_ref_name(spec.get("trustedCA")),
        )

    def handle_openshift_cluster_wide_proxy_config(self, cr: dict) -> None:
        """Fill proxy env and trusted CA from the Openshift cluster-wide proxy where not set."""
        proxy = self._read_openshift_proxy_config()
        if proxy is None:
            return
        spec = cr["spec"]["ofedDriver"]
        spec["env"] = set_env_from_cluster_wide_proxy(spec.get("env"), proxy)

        cert_name = _ref_name(spec.get("certConfig"))
        if cert_name:
            log.debug("use trusted certificate configuration from NicClusterPolicy ConfigMap=%s", cert_name)
            return
        if not proxy.trusted_ca:
            return
        config_map = self.get_or_create_trusted_ca_config_map(cr)
        cm_name = (config_map.get("metadata") or {}).get("name", "")
        spec["certConfig"] = {"name": cm_name}
        log.debug("use trusted certificate configuration from Openshift cluster-Wide proxy ConfigMap=%s", cm_name)

    def get_or_create_trusted_ca_config_map(self, cr: dict) -> dict:
        """Return the trusted CA ConfigMap, creating it and waiting for Openshift to fill it."""
        name = OCP_TRUSTED_CA_CONFIG_MAP_NAME
        try:
            config_map = self.client.get(CONFIG_MAP_GVK, self.namespace, name)
        except NotFoundError:
            pass
        except ApiError as err:
            raise StateError(f"failed to get trusted CA bundle config map {name}: {err}") from err
        else:
            log.debug("TrustedCAConfigMap already exist name=%s namespace=%s", name, self.namespace)
            if not (config_map.get("data") or {}).get(OCP_TRUSTED_CA_BUNDLE_FILE_NAME):
                log.warning("TrustedCAConfigMap has empty ca-bundle.crt key name=%s namespace=%s",
                            name, self.namespace)
            return config_map

        config_map = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "name": name,
                "namespace": self.namespace,
                # Openshift fills and refreshes the bundle of ConfigMaps with this label.
                "labels": {"config.openshift.io/inject-trusted-cabundle": "true"},
            },
            "data": {OCP_TRUSTED_CA_BUNDLE_FILE_NAME: ""},
        }
        set_controller_reference(cr, config_map)
        try:
            self.client.create(config_map)
        except ApiError as err:
            raise StateError(f"failed to create TrustedCAConfigMap: {err}") from err
        log.info("TrustedCAConfigMap created name=%s namespace=%s", name, self.namespace)

        deadline = time.monotonic() + self.ca_check_timeout
        while True:
            try:
                current = self.client.get(CONFIG_MAP_GVK, self.namespace, name)
            except NotFoundError:
                current = None
            except ApiError as err:
                raise StateError(f"failed to check TrustedCAConfigMap content: {err}") from err
            if current is not None:
                config_map = current
                if (current.get("data") or {}).get(OCP_TRUSTED_CA_BUNDLE_FILE_NAME):
                    log.info("TrustedCAConfigMap has been populated by Openshift name=%s namespace=%s",
                             name, self.namespace)
                    return config_map
            if time.monotonic() >= deadline:
                log.warning(
                    "TrustedCAConfigMap was not populated by Openshift, this may result in "
                    "misconfiguration of trusted certificates for the OFED container name=%s namespace=%s",
                    name, self.namespace,
                )
                return config_map
            time.sleep(self.ca_check_interval)

    def driver_toolkit_image(self, ostree_version: str) -> str:
        """Driver toolkit image for the RHCOS version, from the driver-toolkit ImageStream."""
        try:
            stream = self.client.get(IMAGE_STREAM_GVK, DTK_IMAGE_STREAM_NAMESPACE, DTK_IMAGE_STREAM_NAME)
        except ApiError:
            log.error("Couldn't get the driver-toolkit imagestream")
            raise
        images = {
            tag.get("name", ""): (tag.get("from") or {}).get("name", "")
            for tag in (stream.get("spec") or {}).get("tags") or ()
        }
        try:
            return images[ostree_version]
        except KeyError:
            raise StateError(f"failed to find DTK image for RHCOS version: {ostree_version}") from None