"""Building the CNI runtime configuration handed to each delegate plugin."""

from __future__ import annotations

import dataclasses
import ipaddress
import logging
import os
import posixpath
from dataclasses import dataclass, field
from typing import Any

from multusconf.types import (
    DelegateNetConf,
    IPAddress,
    K8sArgs,
    RuntimeConfig,
)

logger = logging.getLogger(__name__)

DEVICE_INFO_BASE_DIR = "/var/run/k8s.cni.cncf.io/devinfo"
CNI_DEVICE_INFO_SUBDIR = "cni"

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


@dataclass
class CmdArgs:
    """Arguments a CNI plugin receives for one ADD / DEL / CHECK call."""

    container_id: str = ""
    netns: str = ""
    ifname: str = ""
    args: str = ""
    path: str = ""
    stdin_data: bytes = b""


@dataclass
class RuntimeConf:
    """Runtime values passed to a delegate plugin invocation."""

    container_id: str = ""
    netns: str = ""
    ifname: str = ""
    args: list[tuple[str, str]] = field(default_factory=list)
    capability_args: dict[str, Any] = field(default_factory=dict)


@dataclass
class Route:
    """A route from a CNI result."""

    dst: IPNetwork
    gw: IPAddress | None = None


@dataclass
class CNIResult:
    """The parts of a CNI result that the multiplexer inspects."""

    cni_version: str = ""
    ips: list[dict[str, Any]] = field(default_factory=list)
    routes: list[Route] = field(default_factory=list)
    dns: dict[str, Any] = field(default_factory=dict)


def merge_cni_runtime_config(
    runtime_config: RuntimeConfig | None, delegate: DelegateNetConf
) -> RuntimeConfig:
    """Return a copy of ``runtime_config`` with the delegate's requests applied.

    The master plugin gets the runtime config unchanged.
    """
    merged = RuntimeConfig() if runtime_config is None else dataclasses.replace(runtime_config)
    if not delegate.master_plugin:
        if delegate.port_mappings_request is not None:
            merged.port_maps = delegate.port_mappings_request
        if delegate.bandwidth_request is not None:
            merged.bandwidth = delegate.bandwidth_request
        if delegate.ip_request is not None:
            merged.ips = delegate.ip_request
        if delegate.mac_request:
            merged.mac = delegate.mac_request
        if delegate.infiniband_guid_request:
            merged.infiniband_guid = delegate.infiniband_guid_request
        if delegate.device_id:
            merged.device_id = delegate.device_id
        logger.debug("merged runtime config for delegate %s: %s", delegate.name, merged)
    return merged


def device_info_path(name: str) -> str:
    """Return the device-info file path used for the network attachment ``name``."""
    return posixpath.join(
        DEVICE_INFO_BASE_DIR, CNI_DEVICE_INFO_SUBDIR, name.replace("/", "-")
    )


def delegate_runtime_config(
    container_id: str,
    delegate: DelegateNetConf | None,
    rc: RuntimeConfig | None,
    ifname: str,
) -> RuntimeConfig | None:
    """Return the runtime config for one delegate, adding a device-info file if needed."""
    if delegate is None:
        return rc
    delegate_rc = merge_cni_runtime_config(rc, delegate)
    if delegate_rc.device_id:
        if delegate_rc.cni_device_info_file:
            logger.debug(
                "existing CNIDeviceInfoFile %s will be overwritten",
                delegate_rc.cni_device_info_file,
            )
        delegate_rc.cni_device_info_file = device_info_path(
            f"{delegate.name}-{container_id}_{ifname}"
        )
        logger.debug("adding auto-generated CNIDeviceInfoFile: %s", delegate_rc.cni_device_info_file)
    return delegate_rc


def _merge_env_args(pairs: list[tuple[str, str]], cni_args: str) -> None:
    for arg in cni_args.split(";"):
        key, sep, value = arg.partition("=")
        if not sep:
            logger.error("CNI_ARGS entry %r is not recognized as a CNI arg, skipped", arg)
            continue
        for idx, (existing_key, existing_value) in enumerate(pairs):
            # Only fill in keys whose value is still empty.
            if existing_key == key and not existing_value and value:
                pairs[idx] = (key, value)
                break
        else:
            pairs.append((key, value))


def _capability_args(rc: RuntimeConfig) -> dict[str, Any]:
    caps: dict[str, Any] = {}
    if rc.port_maps:
        caps["portMappings"] = rc.port_maps
    if rc.bandwidth is not None:
        caps["bandwidth"] = rc.bandwidth
    if rc.ips:
        caps["ips"] = rc.ips
    if rc.mac:
        caps["mac"] = rc.mac
    if rc.infiniband_guid:
        caps["infinibandGUID"] = rc.infiniband_guid
    if rc.device_id:
        caps["deviceID"] = rc.device_id
    if rc.cni_device_info_file:
        caps["CNIDeviceInfoFile"] = rc.cni_device_info_file
    return caps


def new_cni_runtime_conf(
    container_id: str,
    sandbox_id: str,
    pod_name: str,
    pod_namespace: str,
    pod_uid: str,
    netns: str,
    ifname: str,
    rc: RuntimeConfig | None,
    delegate: DelegateNetConf | None,
) -> tuple[RuntimeConf, str]:
    """Create the RuntimeConf for a request; return it with the device-info file path."""
    delegate_rc = delegate_runtime_config(container_id, delegate, rc, ifname)
    # The order of these pairs is relied upon by verbose logging.
    rt = RuntimeConf(
        container_id=container_id,
        netns=netns,
        ifname=ifname,
        args=[
            ("IgnoreUnknown", "true"),
            ("K8S_POD_NAMESPACE", pod_namespace),
            ("K8S_POD_NAME", pod_name),
            ("K8S_POD_INFRA_CONTAINER_ID", sandbox_id),
            ("K8S_POD_UID", pod_uid),
        ],
    )

    env_args = os.environ.get("CNI_ARGS", "")
    if env_args:
        _merge_env_args(rt.args, env_args)

    device_info_file = ""
    if delegate_rc is not None:
        device_info_file = delegate_rc.cni_device_info_file
        rt.capability_args = _capability_args(delegate_rc)
    return rt, device_info_file


def create_cni_runtime_conf(
    args: CmdArgs,
    k8s_args: K8sArgs,
    ifname: str,
    rc: RuntimeConfig | None,
    delegate: DelegateNetConf | None,
) -> tuple[RuntimeConf, str]:
    """Create the RuntimeConf for a delegate from the plugin call and its Kubernetes args."""
    return new_cni_runtime_conf(
        args.container_id,
        k8s_args.k8s_pod_infra_container_id,
        k8s_args.k8s_pod_name,
        k8s_args.k8s_pod_namespace,
        k8s_args.k8s_pod_uid,
        args.netns,
        ifname,
        rc,
        delegate,
    )


def get_gateway_from_result(result: CNIResult) -> list[IPAddress | None]:
    """Return the gateways of the result's default routes."""
    return [route.gw for route in result.routes if route.dst.prefixlen == 0]