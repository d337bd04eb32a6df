"""Loading and validating the multiplexer and delegate network configurations."""

from __future__ import annotations

import ipaddress
import json
import logging
import os
import time
from typing import Any, Callable, Iterable, Mapping

from multusconf.types import (
    ConfigError,
    DelegateNetConf,
    LogOptions,
    NetConf,
    NetworkSelectionElement,
    RuntimeConfig,
)

logger = logging.getLogger(__name__)

DEFAULT_CNI_DIR = "/var/lib/cni/multus"
DEFAULT_CONF_DIR = "/etc/cni/multus/net.d"
DEFAULT_BIN_DIR = "/opt/cni/bin"
DEFAULT_READINESS_INDICATOR_FILE = ""
DEFAULT_MULTUS_NAMESPACE = "kube-system"
DEFAULT_NON_ISOLATED_NAMESPACE = "default"


def _as_bytes(data: bytes | str) -> bytes:
    return data.encode("utf-8") if isinstance(data, str) else bytes(data)


def _decode(data: bytes | str, what: str) -> Any:
    try:
        return json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ConfigError(f"error unmarshalling {what}: {exc}") from exc


def _decode_object(data: bytes | str, what: str) -> dict[str, Any]:
    value = _decode(data, what)
    if not isinstance(value, dict):
        raise ConfigError(f"error unmarshalling {what}: expected a JSON object")
    return value


def _encode(value: Any) -> bytes:
    return json.dumps(
        value, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def _check_strings(obj: Mapping[str, Any], keys: Iterable[str], what: str) -> None:
    for key in keys:
        value = obj.get(key)
        if value is not None and not isinstance(value, str):
            raise ConfigError(f"error unmarshalling {what}: field {key!r} must be a string")


def load_delegate_net_conf_list(data: bytes | str, delegate_conf: DelegateNetConf) -> None:
    """Parse a delegate conflist into ``delegate_conf`` and mark it as a conflist."""
    conf_list = _decode_object(data, "delegate conflist")
    _check_strings(conf_list, ("cniVersion", "name"), "delegate conflist")
    plugins = conf_list.get("plugins")
    if plugins is None:
        raise ConfigError("delegate must have the 'type' or 'plugin' field")
    if not isinstance(plugins, list) or not all(isinstance(p, dict) for p in plugins):
        raise ConfigError("error unmarshalling delegate conflist: 'plugins' must be a list of objects")
    for plugin in plugins:
        _check_strings(plugin, ("cniVersion", "name", "type"), "delegate conflist plugin")
    if not plugins or not plugins[0].get("type"):
        raise ConfigError("a plugin delegate must have the 'type' field")
    delegate_conf.conf_list = conf_list
    delegate_conf.conf_list_plugin = True
    delegate_conf.name = conf_list.get("name") or ""


def _apply_selection(
    delegate: DelegateNetConf, element: NetworkSelectionElement, device_id: str
) -> None:
    if element.name:
        # The attachment definition's name replaces the CNI config name.
        delegate.name = f"{element.namespace}/{element.name}"
    if element.interface_request:
        delegate.ifname_request = element.interface_request
    if element.mac_request:
        delegate.mac_request = element.mac_request
    if element.ip_request is not None:
        delegate.ip_request = element.ip_request
    if element.bandwidth_request is not None:
        delegate.bandwidth_request = element.bandwidth_request
    if element.port_mappings_request is not None:
        delegate.port_mappings_request = element.port_mappings_request
    if element.gateway_request is not None:
        delegate.gateway_request = [*(delegate.gateway_request or []), *element.gateway_request]
    if element.infiniband_guid_request:
        delegate.infiniband_guid_request = element.infiniband_guid_request
    if element.device_id:
        if device_id:
            logger.debug("both runtime config and resource map provide deviceID; ignoring runtime config")
        else:
            delegate.device_id = element.device_id


def load_delegate_net_conf(
    data: bytes | str,
    net_element: NetworkSelectionElement | None,
    device_id: str,
    resource_name: str,
) -> DelegateNetConf:
    """Build a DelegateNetConf from raw CNI JSON and an optional selection element."""
    payload = _as_bytes(data)
    conf = _decode_object(payload, "delegate config")
    _check_strings(conf, ("cniVersion", "name", "type"), "delegate config")
    delegate = DelegateNetConf(conf=conf, name=conf.get("name") or "")
    cni_args = net_element.cni_args if net_element is not None else None

    if not conf.get("type"):
        load_delegate_net_conf_list(payload, delegate)
        if device_id:
            payload = add_device_id_in_conf_list(payload, device_id)
            delegate.resource_name = resource_name
            delegate.device_id = device_id
        if cni_args is not None:
            payload = add_cni_args_in_conf_list(payload, cni_args)
    else:
        if device_id:
            payload = delegate_add_device_id(payload, device_id)
            delegate.resource_name = resource_name
            delegate.device_id = device_id
        if cni_args is not None:
            payload = add_cni_args_in_config(payload, cni_args)

    if net_element is not None:
        _apply_selection(delegate, net_element, device_id)

    delegate.data = payload
    return delegate


def get_default_net_conf() -> NetConf:
    """Return a NetConf holding the default settings."""
    return NetConf(
        bin_dir=DEFAULT_BIN_DIR,
        conf_dir=DEFAULT_CONF_DIR,
        cni_dir=DEFAULT_CNI_DIR,
        log_to_stderr=True,
        multus_namespace=DEFAULT_MULTUS_NAMESPACE,
        non_isolated_namespaces=[DEFAULT_NON_ISOLATED_NAMESPACE],
        readiness_indicator_file=DEFAULT_READINESS_INDICATOR_FILE,
        system_namespaces=["kube-system"],
    )


def _str_value(value: Any, key: str) -> str:
    if not isinstance(value, str):
        raise ConfigError(f"failed to load netconf: field {key!r} must be a string")
    return value


def _bool_value(value: Any, key: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"failed to load netconf: field {key!r} must be a boolean")
    return value


def _object_value(value: Any, key: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ConfigError(f"failed to load netconf: field {key!r} must be a JSON object")
    return dict(value)


def _str_list_value(value: Any, key: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"failed to load netconf: field {key!r} must be a list of strings")
    return list(value)


def _object_list_value(value: Any, key: str) -> list[dict[str, Any]]:
    if not isinstance(value, list) or not all(isinstance(v, dict) for v in value):
        raise ConfigError(f"failed to load netconf: field {key!r} must be a list of objects")
    return [dict(v) for v in value]


def _capabilities_value(value: Any, key: str) -> dict[str, bool]:
    caps = _object_value(value, key)
    if not all(isinstance(v, bool) for v in caps.values()):
        raise ConfigError(f"failed to load netconf: field {key!r} must map names to booleans")
    return caps


def _log_options_value(value: Any, key: str) -> LogOptions:
    return LogOptions.from_dict(value)


def _runtime_config_value(value: Any, key: str) -> RuntimeConfig:
    return RuntimeConfig.from_dict(value)


_MISSING = object()

# JSON key -> (attribute, converter, value that a JSON null assigns, or _MISSING to keep)
_NETCONF_FIELDS: dict[str, tuple[str, Callable[[Any, str], Any], Any]] = {
    "cniVersion": ("cni_version", _str_value, _MISSING),
    "name": ("name", _str_value, _MISSING),
    "type": ("type", _str_value, _MISSING),
    "capabilities": ("capabilities", _capabilities_value, {}),
    "ipam": ("ipam", _object_value, _MISSING),
    "dns": ("dns", _object_value, _MISSING),
    "prevResult": ("raw_prev_result", _object_value, None),
    "confDir": ("conf_dir", _str_value, _MISSING),
    "cniDir": ("cni_dir", _str_value, _MISSING),
    "binDir": ("bin_dir", _str_value, _MISSING),
    "delegates": ("raw_delegates", _object_list_value, None),
    "clusterNetwork": ("cluster_network", _str_value, _MISSING),
    "defaultNetworks": ("default_networks", _str_list_value, None),
    "kubeconfig": ("kubeconfig", _str_value, _MISSING),
    "logFile": ("log_file", _str_value, _MISSING),
    "logLevel": ("log_level", _str_value, _MISSING),
    "logToStderr": ("log_to_stderr", _bool_value, _MISSING),
    "logOptions": ("log_options", _log_options_value, None),
    "runtimeConfig": ("runtime_config", _runtime_config_value, None),
    "readinessindicatorfile": ("readiness_indicator_file", _str_value, _MISSING),
    "namespaceIsolation": ("namespace_isolation", _bool_value, _MISSING),
    "globalNamespaces": ("raw_non_isolated_namespaces", _str_value, _MISSING),
    "systemNamespaces": ("system_namespaces", _str_list_value, []),
    "multusNamespace": ("multus_namespace", _str_value, _MISSING),
    "retryDeleteOnError": ("retry_delete_on_error", _bool_value, _MISSING),
}
_NETCONF_FIELDS_FOLDED = {key.lower(): spec for key, spec in _NETCONF_FIELDS.items()}


def _apply_fields(netconf: NetConf, raw: Mapping[str, Any]) -> None:
    for key, value in raw.items():
        spec = _NETCONF_FIELDS.get(key) or _NETCONF_FIELDS_FOLDED.get(key.lower())
        if spec is None:
            continue
        attr, convert, null_value = spec
        if value is None:
            if null_value is not _MISSING:
                setattr(netconf, attr, null_value)
            continue
        setattr(netconf, attr, convert(value, key))


def load_net_conf(data: bytes | str) -> NetConf:
    """Parse the multiplexer configuration (the plugin's stdin) into a NetConf."""
    netconf = get_default_net_conf()
    raw = _decode_object(data, "netconf")
    _apply_fields(netconf, raw)

    if netconf.raw_prev_result is not None:
        netconf.prev_result = json.loads(_encode(netconf.raw_prev_result))
        netconf.raw_prev_result = None

    # Delegates run in order; without a cluster network the first is the master plugin.
    if not netconf.raw_delegates and not netconf.cluster_network:
        raise ConfigError("at least one delegate/clusterNetwork must be specified")

    if netconf.raw_non_isolated_namespaces:
        netconf.non_isolated_namespaces = [
            ns.strip() for ns in netconf.raw_non_isolated_namespaces.split(",")
        ]

    if not netconf.cluster_network:
        for idx, raw_conf in enumerate(netconf.raw_delegates or []):
            try:
                delegate = load_delegate_net_conf(_encode(raw_conf), None, "", "")
            except ConfigError as exc:
                raise ConfigError(f"failed to load delegate {idx} config: {exc}") from exc
            netconf.delegates.append(delegate)
        netconf.raw_delegates = None
        netconf.delegates[0].master_plugin = True

    return netconf


def delegate_add_device_id(data: bytes | str, device_id: str) -> bytes:
    """Return the CNI config with ``deviceID`` and ``pciBusID`` set."""
    config = _decode_object(data, "delegate config")
    config["deviceID"] = device_id
    config["pciBusID"] = device_id
    return _encode(config)


def _plugins_of(config: Mapping[str, Any]) -> list[dict[str, Any]]:
    if "plugins" not in config:
        raise ConfigError("unable to get plugin list")
    plugins = config["plugins"]
    if not isinstance(plugins, list):
        raise ConfigError("unable to typecast plugin list")
    for idx, plugin in enumerate(plugins):
        if not isinstance(plugin, dict):
            raise ConfigError(f"unable to typecast plugin #{idx}")
    return plugins


def add_device_id_in_conf_list(data: bytes | str, device_id: str) -> bytes:
    """Return the CNI conflist with ``deviceID`` and ``pciBusID`` set on every plugin."""
    config = _decode_object(data, "delegate conflist")
    for plugin in _plugins_of(config):
        plugin["deviceID"] = device_id
        plugin["pciBusID"] = device_id
    return _encode(config)


def _inject_cni_args(config: dict[str, Any], cni_args: Mapping[str, Any]) -> None:
    if "args" not in config:
        config["args"] = {"cni": dict(cni_args)}
        return
    args = config["args"]
    if not isinstance(args, dict):
        raise ConfigError("'args' must be a JSON object")
    if "cni" not in args:
        args["cni"] = dict(cni_args)
        return
    cni = args["cni"]
    if not isinstance(cni, dict):
        raise ConfigError("'args.cni' must be a JSON object")
    cni.update(cni_args)


def add_cni_args_in_config(data: bytes | str, cni_args: Mapping[str, Any]) -> bytes:
    """Return the CNI config with ``cni_args`` merged into ``args.cni``."""
    config = _decode_object(data, "delegate config")
    _inject_cni_args(config, cni_args)
    return _encode(config)


def add_cni_args_in_conf_list(data: bytes | str, cni_args: Mapping[str, Any]) -> bytes:
    """Return the CNI conflist with ``cni_args`` merged into every plugin's ``args.cni``."""
    config = _decode_object(data, "delegate conflist")
    for plugin in _plugins_of(config):
        _inject_cni_args(plugin, cni_args)
    return _encode(config)


def _is_v4(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    if isinstance(address, ipaddress.IPv4Address):
        return True
    return address.ipv4_mapped is not None


def check_gateway_config(delegates: list[DelegateNetConf]) -> None:
    """Reject multiple default routes per family and set each delegate's filter flags."""
    gateways = [gw for d in delegates for gw in (d.gateway_request or [])]
    v4_count = sum(1 for gw in gateways if _is_v4(gw))
    v6_count = len(gateways) - v4_count
    if v4_count > 1 or v6_count > 1:
        raise ConfigError("multus does not support ECMP for default-route")

    for delegate in delegates:
        requested = delegate.gateway_request or []
        delegate.is_filter_v4_gateway = not any(_is_v4(gw) for gw in requested)
        delegate.is_filter_v6_gateway = all(_is_v4(gw) for gw in requested)


def check_system_namespaces(namespace: str, system_namespaces: Iterable[str]) -> bool:
    """Return True if ``namespace`` is one of ``system_namespaces``."""
    return namespace in system_namespaces


def wait_for_readiness_indicator_file(
    path: str | os.PathLike[str], interval: float = 1.0, timeout: float = 45.0
) -> None:
    """Block until ``path`` exists, checking at once and then every ``interval`` seconds."""
    deadline = time.monotonic() + timeout
    while True:
        if os.path.exists(path):
            return
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError(f"timed out waiting for readiness indicator file {os.fspath(path)!r}")
        time.sleep(min(interval, remaining))