"""Configuration data types shared by the CNI multiplexer."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import Any, Mapping

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


class ConfigError(ValueError):
    """Raised when a network configuration cannot be parsed or is invalid."""


def _require_mapping(data: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ConfigError(f"{what} must be a JSON object, got {type(data).__name__}")
    return data


def _get_str(data: Mapping[str, Any], key: str, default: str = "") -> str:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ConfigError(f"field {key!r} must be a string")
    return value


def _get_int(data: Mapping[str, Any], key: str, default: int | None = 0) -> int | None:
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"field {key!r} must be an integer")
    return value


def _get_bool(data: Mapping[str, Any], key: str, default: bool | None = False) -> bool | None:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"field {key!r} must be a boolean")
    return value


def _get_str_list(data: Mapping[str, Any], key: str) -> list[str] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(f"field {key!r} must be a list of strings")
    return list(value)


def _get_object(data: Mapping[str, Any], key: str) -> dict[str, Any] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise ConfigError(f"field {key!r} must be a JSON object")
    return dict(value)


def _get_port_maps(data: Mapping[str, Any], key: str) -> list[PortMapEntry] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, list):
        raise ConfigError(f"field {key!r} must be a list")
    return [PortMapEntry.from_dict(item) for item in value]


def _get_bandwidth(data: Mapping[str, Any], key: str) -> BandwidthEntry | None:
    value = data.get(key)
    if value is None:
        return None
    return BandwidthEntry.from_dict(value)


def _get_ip_list(data: Mapping[str, Any], key: str) -> list[IPAddress] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, list):
        raise ConfigError(f"field {key!r} must be a list of IP addresses")
    addresses = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"field {key!r} must be a list of IP addresses")
        try:
            addresses.append(ipaddress.ip_address(item))
        except ValueError as exc:
            raise ConfigError(f"invalid IP address {item!r} in {key!r}") from exc
    return addresses


@dataclass
class LogOptions:
    """Log file rotation options."""

    max_age: int | None = None
    max_size: int | None = None
    max_backups: int | None = None
    compress: bool | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> LogOptions:
        data = _require_mapping(data, "logOptions")
        return cls(
            max_age=_get_int(data, "maxAge", None),
            max_size=_get_int(data, "maxSize", None),
            max_backups=_get_int(data, "maxBackups", None),
            compress=_get_bool(data, "compress", None),
        )


@dataclass
class PortMapEntry:
    """One port mapping passed to a CNI plugin."""

    host_port: int = 0
    container_port: int = 0
    protocol: str = ""
    host_ip: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PortMapEntry:
        data = _require_mapping(data, "port mapping")
        return cls(
            host_port=_get_int(data, "hostPort"),
            container_port=_get_int(data, "containerPort"),
            protocol=_get_str(data, "protocol"),
            host_ip=_get_str(data, "hostIP"),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "hostPort": self.host_port,
            "containerPort": self.container_port,
        }
        if self.protocol:
            result["protocol"] = self.protocol
        if self.host_ip:
            result["hostIP"] = self.host_ip
        return result


@dataclass
class BandwidthEntry:
    """Ingress and egress rate limits."""

    ingress_rate: int = 0
    ingress_burst: int = 0
    egress_rate: int = 0
    egress_burst: int = 0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BandwidthEntry:
        data = _require_mapping(data, "bandwidth")
        return cls(
            ingress_rate=_get_int(data, "ingressRate"),
            ingress_burst=_get_int(data, "ingressBurst"),
            egress_rate=_get_int(data, "egressRate"),
            egress_burst=_get_int(data, "egressBurst"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "ingressRate": self.ingress_rate,
            "ingressBurst": self.ingress_burst,
            "egressRate": self.egress_rate,
            "egressBurst": self.egress_burst,
        }


@dataclass
class RuntimeConfig:
    """CNI runtime configuration (capability arguments)."""

    port_maps: list[PortMapEntry] | None = None
    bandwidth: BandwidthEntry | None = None
    ips: list[str] | None = None
    mac: str = ""
    infiniband_guid: str = ""
    device_id: str = ""
    cni_device_info_file: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RuntimeConfig:
        data = _require_mapping(data, "runtimeConfig")
        return cls(
            port_maps=_get_port_maps(data, "portMappings"),
            bandwidth=_get_bandwidth(data, "bandwidth"),
            ips=_get_str_list(data, "ips"),
            mac=_get_str(data, "mac"),
            infiniband_guid=_get_str(data, "infinibandGUID"),
            device_id=_get_str(data, "deviceID"),
            cni_device_info_file=_get_str(data, "CNIDeviceInfoFile"),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.port_maps:
            result["portMappings"] = [entry.to_dict() for entry in self.port_maps]
        if self.bandwidth is not None:
            result["bandwidth"] = self.bandwidth.to_dict()
        if self.ips:
            result["ips"] = list(self.ips)
        if self.mac:
            result["mac"] = self.mac
        if self.infiniband_guid:
            result["infinibandGUID"] = self.infiniband_guid
        if self.device_id:
            result["deviceID"] = self.device_id
        if self.cni_device_info_file:
            result["CNIDeviceInfoFile"] = self.cni_device_info_file
        return result


@dataclass
class NetworkSelectionElement:
    """One element of the network attachment selection annotation."""

    name: str = ""
    namespace: str = ""
    ip_request: list[str] | None = None
    mac_request: str = ""
    infiniband_guid_request: str = ""
    interface_request: str = ""
    deprecated_interface_request: str = ""
    port_mappings_request: list[PortMapEntry] | None = None
    bandwidth_request: BandwidthEntry | None = None
    device_id: str = ""
    cni_args: dict[str, Any] | None = None
    gateway_request: list[IPAddress] | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> NetworkSelectionElement:
        data = _require_mapping(data, "network selection element")
        return cls(
            name=_get_str(data, "name"),
            namespace=_get_str(data, "namespace"),
            ip_request=_get_str_list(data, "ips"),
            mac_request=_get_str(data, "mac"),
            infiniband_guid_request=_get_str(data, "infiniband-guid"),
            interface_request=_get_str(data, "interface"),
            deprecated_interface_request=_get_str(data, "interfaceRequest"),
            port_mappings_request=_get_port_maps(data, "portMappings"),
            bandwidth_request=_get_bandwidth(data, "bandwidth"),
            device_id=_get_str(data, "deviceID"),
            cni_args=_get_object(data, "cni-args"),
            gateway_request=_get_ip_list(data, "default-route"),
        )


@dataclass
class DelegateNetConf:
    """A delegate plugin configuration together with the pod's requests for it."""

    conf: dict[str, Any] = field(default_factory=dict)
    conf_list: dict[str, Any] = field(default_factory=dict)
    name: str = ""
    ifname_request: str = ""
    mac_request: str = ""
    infiniband_guid_request: str = ""
    ip_request: list[str] | None = None
    port_mappings_request: list[PortMapEntry] | None = None
    bandwidth_request: BandwidthEntry | None = None
    gateway_request: list[IPAddress] | None = None
    is_filter_v4_gateway: bool = False
    is_filter_v6_gateway: bool = False
    master_plugin: bool = False
    conf_list_plugin: bool = False
    device_id: str = ""
    resource_name: str = ""
    data: bytes = b""


@dataclass
class K8sArgs:
    """Kubernetes values carried in CNI_ARGS."""

    ignore_unknown: bool = False
    ip: IPAddress | None = None
    k8s_pod_name: str = ""
    k8s_pod_namespace: str = ""
    k8s_pod_infra_container_id: str = ""
    k8s_pod_uid: str = ""


@dataclass
class ResourceInfo:
    """Device allocation of one pod resource."""

    index: int = 0
    device_ids: list[str] = field(default_factory=list)


@dataclass
class NetConf:
    """The multiplexer's own network configuration."""

    cni_version: str = ""
    name: str = ""
    type: str = ""
    capabilities: dict[str, bool] = field(default_factory=dict)
    ipam: dict[str, Any] = field(default_factory=dict)
    dns: dict[str, Any] = field(default_factory=dict)
    raw_prev_result: dict[str, Any] | None = None
    prev_result: Any = None
    conf_dir: str = ""
    cni_dir: str = ""
    bin_dir: str = ""
    raw_delegates: list[dict[str, Any]] | None = None
    delegates: list[DelegateNetConf] = field(default_factory=list)
    cluster_network: str = ""
    default_networks: list[str] | None = None
    kubeconfig: str = ""
    log_file: str = ""
    log_level: str = ""
    log_to_stderr: bool = False
    log_options: LogOptions | None = None
    runtime_config: RuntimeConfig | None = None
    readiness_indicator_file: str = ""
    namespace_isolation: bool = False
    raw_non_isolated_namespaces: str = ""
    non_isolated_namespaces: list[str] = field(default_factory=list)
    system_namespaces: list[str] = field(default_factory=list)
    multus_namespace: str = ""
    retry_delete_on_error: bool = False

    def add_delegates(self, new_delegates) -> None:
        """Append delegates to the end of the delegate list."""
        self.delegates.extend(new_delegates)