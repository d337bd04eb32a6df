# multusconf

Parse and validate the JSON configuration of a multi-network CNI meta-plugin,
then turn each delegate network into the runtime configuration that its
plugin is invoked with. The package has no dependencies beyond the standard
library.

## Modules

- `multusconf.types`: dataclasses for the configuration (`NetConf`,
  `DelegateNetConf`, `NetworkSelectionElement`, `RuntimeConfig`,
  `PortMapEntry`, `BandwidthEntry`, `LogOptions`, `K8sArgs`, `ResourceInfo`)
  and the `ConfigError` exception.
- `multusconf.conf`: loading the main configuration and delegate
  configurations, injecting device IDs and CNI args, gateway and namespace
  checks, waiting for a readiness file.
- `multusconf.runtime`: building the per-delegate `RuntimeConf`
  (`CmdArgs`, `RuntimeConf`, `Route`, `CNIResult` and helpers).

## Loading a configuration

```python
from multusconf.conf import load_net_conf

conf = load_net_conf(b"""{
    "name": "node-cni-network",
    "type": "multus",
    "namespaceIsolation": true,
    "globalNamespaces": " foo,bar ,default",
    "delegates": [{"type": "weave-net"}, {"type": "foobar"}]
}""")

conf.delegates[0].master_plugin    # True: the first delegate is the master plugin
conf.delegates[1].master_plugin    # False
conf.non_isolated_namespaces       # ['foo', 'bar', 'default']
```

`load_net_conf` accepts bytes or str. Top-level keys are matched
case-insensitively; unknown keys are ignored. When `clusterNetwork` is not
set, at least one delegate is required, and every entry of `delegates` is
loaded with `load_delegate_net_conf`. A `prevResult` object is kept as a
plain dict in `prev_result`. Invalid JSON, fields of the wrong type, a
delegate without a `type` (or a `plugins` list whose first entry has no
`type`) raise `multusconf.types.ConfigError`, a subclass of `ValueError`.

Defaults come from `get_default_net_conf()`: binaries in `/opt/cni/bin`,
configuration in `/etc/cni/multus/net.d`, state in `/var/lib/cni/multus`,
multus namespace and system namespace `kube-system`, non-isolated namespace
`default`, `log_to_stderr` true.

## Delegates and network selection

```python
from multusconf.conf import load_delegate_net_conf, check_gateway_config
from multusconf.types import NetworkSelectionElement

element = NetworkSelectionElement.from_dict(
    {"name": "net1", "namespace": "ns", "default-route": ["10.1.1.1"],
     "cni-args": {"args1": "val1"}}
)
delegate = load_delegate_net_conf(b'{"name": "br", "type": "bridge"}', element, "", "")
delegate.name                   # 'ns/net1'
check_gateway_config([delegate])
delegate.is_filter_v4_gateway   # False
delegate.is_filter_v6_gateway   # True
```

The rewritten plugin JSON is in `delegate.data`. Passing a device ID injects
both `deviceID` and `pciBusID` into the plugin configuration (into every
plugin of a configuration list); CNI args from the selection element are
merged into `args.cni`. The same edits are available directly as
`delegate_add_device_id`, `add_device_id_in_conf_list`,
`add_cni_args_in_config` and `add_cni_args_in_conf_list`.

`check_gateway_config` raises `ConfigError` when more than one IPv4 or more
than one IPv6 default route is requested across all delegates.
`check_system_namespaces(namespace, system_namespaces)` tells whether a
namespace is in the list. `wait_for_readiness_indicator_file(path, interval,
timeout)` checks at once and then every `interval` seconds (default 1) until
the file exists, raising `TimeoutError` after `timeout` seconds (default 45).

## Runtime configuration

```python
from multusconf.runtime import CmdArgs, create_cni_runtime_conf
from multusconf.types import K8sArgs, RuntimeConfig

args = CmdArgs(container_id="123456789", netns="/var/run/netns/test", ifname="eth0")
k8s = K8sArgs(k8s_pod_name="dummy", k8s_pod_namespace="namespacedummy")
rt, device_info_file = create_cni_runtime_conf(args, k8s, "net1", RuntimeConfig(), delegate)
rt.args[0]   # ('IgnoreUnknown', 'true')
```

`rt.args` starts with `IgnoreUnknown`, `K8S_POD_NAMESPACE`, `K8S_POD_NAME`,
`K8S_POD_INFRA_CONTAINER_ID` and `K8S_POD_UID`, in that order. Entries from
the `CNI_ARGS` environment variable (`KEY=VALUE;...`) fill in pod arguments
whose value is empty or are appended; entries without `=` are skipped.

`merge_cni_runtime_config` returns a copy of the runtime configuration with
the delegate's requested port mappings, bandwidth, IPs, MAC, InfiniBand GUID
and device ID applied; for the master plugin the copy is left unchanged.
When the merged configuration has a device ID, a device-info file path is
generated with `device_info_path`, under
`/var/run/k8s.cni.cncf.io/devinfo/cni/`. The non-empty values become
`rt.capability_args`.

`get_gateway_from_result` returns the gateways of the default routes
(prefix length 0) of a `CNIResult`.

## What this package does not do

It provides no command and does not run CNI plugins. It does not talk to
Kubernetes, so network attachment definitions and pod annotations must be
turned into `NetworkSelectionElement` objects by the caller. The `logFile`,
`logLevel` and `logOptions` settings are parsed and stored but not applied
to any logger, and `prevResult` is not checked against a CNI result version.