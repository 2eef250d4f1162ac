"""Building blocks for the OFED driver state: image names, env defaults and extra mounts.

Containers, env variables, volumes and volume mounts are plain dictionaries
shaped like their Kubernetes JSON form.
"""

from __future__ import annotations

import copy
import logging
import posixpath
from dataclasses import dataclass, field
from typing import Any, Mapping, MutableMapping, Optional, Sequence

from netopstate.skel import StateError

log = logging.getLogger(__name__)

CRIO = "cri-o"

OCP_TRUSTED_CA_CONFIG_MAP_NAME = "ocp-network-operator-trusted-ca"
OCP_TRUSTED_CA_BUNDLE_FILE_NAME = "ca-bundle.crt"
OCP_TRUSTED_CA_TARGET_FILE_NAME = "tls-ca-bundle.pem"

ENV_HTTP_PROXY = "HTTP_PROXY"
ENV_HTTPS_PROXY = "HTTPS_PROXY"
ENV_NO_PROXY = "NO_PROXY"
ENV_CREATE_IFNAMES_UDEV = "CREATE_IFNAMES_UDEV"
ENV_DRIVERS_INVENTORY_PATH = "NVIDIA_NIC_DRIVERS_INVENTORY_PATH"
DEFAULT_DRIVERS_INVENTORY_PATH = "/mnt/drivers-inventory"

SAFE_LOAD_ANNOTATION = "nvidia.com/ofed-driver-upgrade.driver-wait-for-safe-load"

# <repo>/<image>:<driver-version>-<os-name><os-ver>-<arch>
DRIVER_IMAGE_FORMAT = "{repo}/{image}:{version}-{os}{os_ver}-{arch}"
# <driver-version>-<kernel-full>-<os-name><os-ver>-<arch>
PRECOMPILED_TAG_FORMAT = "{version}-{kernel}-{os}{os_ver}-{arch}"
# <repo>/<image>:<driver-version>-<kernel-full>-<os-name><os-ver>-<arch>
PRECOMPILED_IMAGE_FORMAT = "{repo}/{image}:{version}-{kernel}-{os}{os_ver}-{arch}"

CERT_CONFIG_PATHS = {
    "ubuntu": "/etc/ssl/certs",
    "rhcos": "/etc/pki/ca-trust/extracted/pem",
    "rhel": "/etc/pki/ca-trust/extracted/pem",
    "sles": "/etc/ssl",
}

REPO_CONFIG_PATHS = {
    "ubuntu": "/etc/apt/sources.list.d",
    "rhcos": "/etc/yum.repos.d",
    "rhel": "/etc/yum.repos.d",
    "sles": "/etc/zypp/repos.d",
}


def _host_path(path: str, path_type: str) -> dict:
    return {"hostPath": {"path": path, "type": path_type}}


# Host paths that expose distribution subscription details to the driver container.
SUBSCRIPTION_PATHS: dict[str, dict[str, dict]] = {
    "rhel": {
        "/run/secrets/etc-pki-entitlement": _host_path("/etc/pki/entitlement", "Directory"),
        "/run/secrets/redhat.repo": _host_path("/etc/yum.repos.d/redhat.repo", "File"),
        "/run/secrets/rhsm": _host_path("/etc/rhsm", "Directory"),
    },
    "sles": {
        "/etc/zypp/credentials.d": _host_path("/etc/zypp/credentials.d", "Directory"),
        "/etc/SUSEConnect": _host_path("/etc/SUSEConnect", "FileOrCreate"),
    },
}

# {config map name: {key in the config map: file name in the container}}
CONFIG_MAP_KEY_OVERRIDES = {
    OCP_TRUSTED_CA_CONFIG_MAP_NAME: {OCP_TRUSTED_CA_BUNDLE_FILE_NAME: OCP_TRUSTED_CA_TARGET_FILE_NAME},
}

_SAFE_ALPHANUMS = "bcdfghjklmnpqrstvwxz2456789"
_FNV32_OFFSET = 2166136261
_FNV32_PRIME = 16777619


@dataclass(frozen=True)
class NodePool:
    """Nodes sharing OS, kernel and architecture, served by one driver DaemonSet."""

    os_name: str = ""
    os_version: str = ""
    kernel: str = ""
    arch: str = ""
    rhcos_version: str = ""
    container_runtime: str = ""
    name: str = ""


@dataclass(frozen=True)
class ProxyConfig:
    """Cluster-wide proxy settings."""

    http_proxy: str = ""
    https_proxy: str = ""
    no_proxy: str = ""
    trusted_ca: str = ""


@dataclass(frozen=True)
class InitContainerConfig:
    """Settings of the driver init container; disabled when no image is given."""

    enable: bool = False
    image_name: str = ""
    safe_load_enable: bool = False
    safe_load_annotation: str = ""


@dataclass
class AdditionalVolumeMounts:
    """Extra volumes and their mounts added to the driver container."""

    volume_mounts: list = field(default_factory=list)
    volumes: list = field(default_factory=list)

    def from_config_map(self, config_map: Mapping[str, Any], dest_dir: str) -> None:
        """Mount every key of ``config_map`` as a file under ``dest_dir``."""
        name = (config_map.get("metadata") or {}).get("name", "")
        overrides = CONFIG_MAP_KEY_OVERRIDES.get(name, {})
        items = []
        for filename in sorted(config_map.get("data") or {}):
            dst = overrides.get(filename) or filename
            self.volume_mounts.append({
                "name": name,
                "readOnly": True,
                "mountPath": posixpath.normpath(posixpath.join(dest_dir, dst)),
                "subPath": dst,
            })
            items.append({"key": filename, "path": dst})
        self.volumes.append({"name": name, "configMap": {"name": name, "items": items}})

    def add_subscription_volumes(self, os_name: str, runtime: str) -> None:
        """Add the host subscription mounts that the OS and runtime call for."""
        if not ((os_name == "rhel" and runtime != CRIO) or os_name == "sles"):
            return
        log.debug("Setting subscription mounts for os=%s runtime=%s", os_name, runtime)
        sources = SUBSCRIPTION_PATHS.get(os_name)
        if sources is None:
            raise StateError(f"failed to find subscription volumes definition for os: {os_name}")
        for num, mount_path in enumerate(sorted(sources)):
            volume_name = f"subscription-config-{num}"
            self.volume_mounts.append({"name": volume_name, "mountPath": mount_path, "readOnly": True})
            volume = {"name": volume_name}
            volume.update(copy.deepcopy(sources[mount_path]))
            self.volumes.append(volume)


def cert_config_path(os_name: str) -> str:
    """Standard directory of TLS certificates for the distribution."""
    try:
        return CERT_CONFIG_PATHS[os_name]
    except KeyError:
        raise StateError("distribution not supported") from None


def repo_config_path(os_name: str) -> str:
    """Standard directory of package repository files for the distribution."""
    try:
        return REPO_CONFIG_PATHS[os_name]
    except KeyError:
        raise StateError("distribution not supported") from None


def string_hash(text: str) -> str:
    """Short deterministic hash built from FNV-1a and safe characters."""
    value = _FNV32_OFFSET
    for byte in text.encode():
        value = ((value ^ byte) * _FNV32_PRIME) & 0xFFFFFFFF
    return "".join(_SAFE_ALPHANUMS[ord(ch) % len(_SAFE_ALPHANUMS)] for ch in str(value))


def merge_with_default_envs(envs: Optional[Sequence[Mapping[str, Any]]]) -> list:
    """Return ``envs`` with the driver container defaults appended where missing."""
    current = list(envs or ())
    names = {env.get("name") for env in current}
    merged = list(current)
    if ENV_CREATE_IFNAMES_UDEV not in names:
        merged.append({"name": ENV_CREATE_IFNAMES_UDEV, "value": "true"})
    if ENV_DRIVERS_INVENTORY_PATH not in names:
        merged.append({"name": ENV_DRIVERS_INVENTORY_PATH, "value": DEFAULT_DRIVERS_INVENTORY_PATH})
    return merged


def set_env_from_cluster_wide_proxy(
    envs: Optional[Sequence[Mapping[str, Any]]], proxy: ProxyConfig
) -> list:
    """Add proxy variables from ``proxy`` unless already set in either case."""
    result = list(envs or ())
    configured = {env.get("name") for env in result}
    for key, value in (
        (ENV_HTTPS_PROXY, proxy.https_proxy),
        (ENV_HTTP_PROXY, proxy.http_proxy),
        (ENV_NO_PROXY, proxy.no_proxy),
    ):
        if not value:
            continue
        if key.upper() in configured or key.lower() in configured:
            continue
        result.append({"name": key.upper(), "value": value})
        result.append({"name": key.lower(), "value": value})
    return result


def precompiled_tag(version: str, pool: NodePool) -> str:
    """Image tag of a driver precompiled for the pool's kernel."""
    return PRECOMPILED_TAG_FORMAT.format(
        version=version, kernel=pool.kernel, os=pool.os_name, os_ver=pool.os_version, arch=pool.arch
    )


def driver_image_name(driver_spec: Mapping[str, Any], pool: NodePool, precompiled_exists: bool) -> str:
    """Full driver image name for the pool, precompiled or built from sources."""
    fmt = PRECOMPILED_IMAGE_FORMAT if precompiled_exists else DRIVER_IMAGE_FORMAT
    return fmt.format(
        repo=driver_spec.get("repository", ""),
        image=driver_spec.get("image", ""),
        version=driver_spec.get("version", ""),
        kernel=pool.kernel,
        os=pool.os_name,
        os_ver=pool.os_version,
        arch=pool.arch,
    )


def init_container_config(upgrade_policy: Optional[Mapping[str, Any]], image: str) -> InitContainerConfig:
    """Init container settings; safe loading needs automatic upgrades and an image."""
    safe_load = bool(
        upgrade_policy and upgrade_policy.get("autoUpgrade") and upgrade_policy.get("safeLoad")
    )
    if image:
        return InitContainerConfig(
            enable=True,
            image_name=image,
            safe_load_enable=safe_load,
            safe_load_annotation=SAFE_LOAD_ANNOTATION,
        )
    if safe_load:
        log.error(
            "safe driver loading feature is enabled, but init container is disabled. "
            "It is required to enable init container to use safe driver loading feature."
        )
    return InitContainerConfig()


def set_probes_defaults(driver_spec: MutableMapping[str, Any]) -> None:
    """Fill in probe settings the user left out."""
    defaults = {
        "startupProbe": {"initialDelaySeconds": 10, "periodSeconds": 10},
        "livenessProbe": {"initialDelaySeconds": 30, "periodSeconds": 30},
        "readinessProbe": {"initialDelaySeconds": 10, "periodSeconds": 30},
    }
    for key, value in defaults.items():
        if driver_spec.get(key) is None:
            driver_spec[key] = value