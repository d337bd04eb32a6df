import ipaddress
import json

import pytest

from multusconf.conf import (
    add_cni_args_in_conf_list,
    add_cni_args_in_config,
    add_device_id_in_conf_list,
    check_gateway_config,
    check_system_namespaces,
    delegate_add_device_id,
    get_default_net_conf,
    load_delegate_net_conf,
    load_delegate_net_conf_list,
    load_net_conf,
    wait_for_readiness_indicator_file,
)
from multusconf.types import (
    BandwidthEntry,
    ConfigError,
    DelegateNetConf,
    NetworkSelectionElement,
    PortMapEntry,
)

VALID_CONF = """{
    "name": "node-cni-network",
    "type": "multus",
    "kubeconfig": "/etc/kubernetes/node-kubeconfig.yaml",
    "delegates": [{
        "type": "weave-net"
    }],
    "runtimeConfig": {
      "portMappings": [
        {"hostPort": 8080, "containerPort": 80, "protocol": "tcp"}
      ]
    }
}"""

MULTUS_WITH_LIST = """{
    "name": "node-cni-network",
    "type": "multus",
    "kubeconfig": "/etc/kubernetes/node-kubeconfig.yaml",
    "delegates": [{
        "name": "weave-list",
        "plugins": [ {"type" :"weave"} ]
    }]
}"""


def _selection():
    return NetworkSelectionElement(
        name="testname",
        interface_request="testIF1",
        mac_request="02:00:00:00:00:01",
        infiniband_guid_request="00:00:00:00:00:00:00:01",
        ip_request=["10.0.0.1/24"],
        bandwidth_request=BandwidthEntry(100, 200, 100, 200),
        port_mappings_request=[PortMapEntry(8080, 80, "tcp", "10.0.0.1")],
    )


def test_parses_valid_multus_configuration():
    conf = load_net_conf(VALID_CONF.encode())
    assert len(conf.delegates) == 1
    assert conf.delegates[0].conf["type"] == "weave-net"
    assert conf.delegates[0].master_plugin is True
    assert len(conf.runtime_config.port_maps) == 1


def test_bad_json_fails_everywhere():
    bad = VALID_CONF[:-1]
    with pytest.raises(ConfigError):
        load_net_conf(bad)
    with pytest.raises(ConfigError):
        load_delegate_net_conf(bad, None, "", "")
    with pytest.raises(ConfigError):
        load_delegate_net_conf_list(bad, DelegateNetConf())
    with pytest.raises(ConfigError):
        add_device_id_in_conf_list(bad, "")
    with pytest.raises(ConfigError):
        delegate_add_device_id(bad, "")


def test_log_file_and_level():
    raw = json.loads(VALID_CONF)
    raw.update(logLevel="debug", logFile="/var/log/multus.log")
    conf = load_net_conf(json.dumps(raw))
    assert conf.log_level == "debug"
    assert conf.log_file == "/var/log/multus.log"


def test_log_options():
    raw = json.loads(VALID_CONF)
    raw["logOptions"] = {"maxAge": 5, "maxSize": 100, "maxBackups": 5, "compress": True}
    conf = load_net_conf(json.dumps(raw))
    assert conf.log_options.max_age == 5
    assert conf.log_options.max_backups == 5
    assert conf.log_options.max_size == 100
    assert conf.log_options.compress is True


def test_namespace_isolation_default():
    conf = load_net_conf(
        '{"name": "n", "type": "multus", "namespaceIsolation": true,'
        ' "delegates": [{"type": "weave-net"}]}'
    )
    assert conf.namespace_isolation is True
    assert conf.non_isolated_namespaces == ["default"]


def test_namespace_isolation_custom():
    conf = load_net_conf(
        '{"name": "n", "type": "multus", "namespaceIsolation": true,'
        ' "globalNamespaces": " foo,bar ,default", "delegates": [{"type": "weave-net"}]}'
    )
    assert conf.namespace_isolation is True
    assert conf.non_isolated_namespaces == ["foo", "bar", "default"]


def test_prev_result_is_parsed():
    raw = json.loads(VALID_CONF)
    raw["prevResult"] = {"ips": [{"version": "4", "address": "10.0.0.5/32", "interface": 2}]}
    conf = load_net_conf(json.dumps(raw))
    assert conf.raw_prev_result is None
    assert conf.prev_result["ips"][0]["address"] == "10.0.0.5/32"


def test_only_delegates():
    conf = load_net_conf(
        '{"name": "n", "type": "multus", "delegates": [{"type": "weave-net"},{"type": "foobar"}]}'
    )
    assert [d.conf["type"] for d in conf.delegates] == ["weave-net", "foobar"]
    assert conf.delegates[0].master_plugin is True
    assert conf.delegates[1].master_plugin is False


@pytest.mark.parametrize(
    "text",
    [
        '{"name": "node-cni-network", "type": "multus"}',
        '{"name": "n", "type": "multus", "kubeconfig": "/etc/kubernetes/node-kubeconfig.yaml"}',
        '{"name": "n", "type": "multus", "delegates": [{"_not_type": "weave-net"}]}',
    ],
)
def test_invalid_netconf_fails(text):
    with pytest.raises(ConfigError):
        load_net_conf(text)


def test_cluster_network_without_delegates():
    conf = load_net_conf('{"name": "n", "type": "multus", "clusterNetwork": "default-net"}')
    assert conf.cluster_network == "default-net"
    assert conf.delegates == []


def test_readiness_defaults_and_override():
    base = (
        '{"name": "defaultnetwork", "type": "multus", %s "delegates": [{"cniVersion": "0.3.0",'
        ' "name": "defaultnetwork", "type": "flannel", "isDefaultGateway": true}]}'
    )
    assert load_net_conf(base % "").readiness_indicator_file == ""
    override = load_net_conf(base % '"readinessindicatorfile": "/etc/cni/net.d/foo",')
    assert override.readiness_indicator_file == "/etc/cni/net.d/foo"


def test_keys_match_case_insensitively():
    conf = load_net_conf(
        '{"readinessIndicatorFile": "/tmp/ready", "delegates": [{"type": "weave-net"}]}'
    )
    assert conf.readiness_indicator_file == "/tmp/ready"


def test_defaults():
    conf = get_default_net_conf()
    assert conf.bin_dir == "/opt/cni/bin"
    assert conf.conf_dir == "/etc/cni/multus/net.d"
    assert conf.cni_dir == "/var/lib/cni/multus"
    assert conf.log_to_stderr is True
    assert conf.multus_namespace == "kube-system"
    assert conf.system_namespaces == ["kube-system"]


def test_check_system_namespaces():
    assert check_system_namespaces("foobar", ["barfoo", "bafoo", "foobar"]) is True
    assert check_system_namespaces("foobar1", ["barfoo", "bafoo", "foobar"]) is False


@pytest.mark.parametrize("key", ["deviceID", "pciBusID"])
def test_device_id_in_conf(key):
    delegate = load_delegate_net_conf(
        '{"name": "second-network", "type": "sriov"}', None, "0000:00:00.0", "res"
    )
    assert json.loads(delegate.data)[key] == "0000:00:00.0"
    assert delegate.device_id == "0000:00:00.0"
    assert delegate.resource_name == "res"


@pytest.mark.parametrize("key", ["deviceID", "pciBusID"])
def test_device_id_in_conf_list_multiple_plugins(key):
    text = '{"name": "second-network", "plugins": [{"type": "sriov"}, {"type": "other-cni"}]}'
    delegate = load_delegate_net_conf(text, None, "0000:00:00.1", "")
    plugins = json.loads(delegate.data)["plugins"]
    assert [p[key] for p in plugins] == ["0000:00:00.1", "0000:00:00.1"]
    assert delegate.conf_list_plugin is True


def test_add_device_id_requires_plugins():
    with pytest.raises(ConfigError):
        add_device_id_in_conf_list('{"name": "x"}', "0000:00:00.1")
    with pytest.raises(ConfigError):
        add_device_id_in_conf_list('{"plugins": {"type": "x"}}', "0000:00:00.1")


def test_cni_args_in_config():
    element = NetworkSelectionElement(name="test-elem", cni_args={"args1": "val1"})
    delegate = load_delegate_net_conf('{"name": "second-network", "type": "bridge"}', element, "", "")
    assert json.loads(delegate.data)["args"]["cni"] == {"args1": "val1"}


def test_cni_args_merge():
    text = (
        '{"name": "second-network", "type": "bridge",'
        ' "args": {"cni": {"args0": "val0", "args1": "val1"}}}'
    )
    element = NetworkSelectionElement(name="test-elem", cni_args={"args1": "val1a"})
    delegate = load_delegate_net_conf(text, element, "", "")
    assert json.loads(delegate.data)["args"]["cni"] == {"args0": "val0", "args1": "val1a"}


def test_cni_args_in_conf_list():
    element = NetworkSelectionElement(name="test-elem", cni_args={"args1": "val1"})
    delegate = load_delegate_net_conf(
        '{"name": "second-network", "plugins": [{"type": "bridge"}]}', element, "", ""
    )
    assert json.loads(delegate.data)["plugins"][0]["args"]["cni"]["args1"] == "val1"


def test_add_cni_args_helpers_keep_other_args():
    out = add_cni_args_in_config('{"type": "b", "args": {"other": 1}}', {"k": "v"})
    assert json.loads(out)["args"] == {"other": 1, "cni": {"k": "v"}}
    out_list = add_cni_args_in_conf_list('{"plugins": [{"type": "a"}, {"type": "b"}]}', {"k": "v"})
    assert [p["args"]["cni"] for p in json.loads(out_list)["plugins"]] == [{"k": "v"}, {"k": "v"}]


def test_selection_element_goes_into_delegate():
    element = _selection()
    delegate = load_delegate_net_conf(
        '{"name": "weave1", "cniVersion": "0.2.0", "type": "weave-net"}', element, "", ""
    )
    assert delegate.ifname_request == element.interface_request
    assert delegate.mac_request == element.mac_request
    assert delegate.infiniband_guid_request == element.infiniband_guid_request
    assert delegate.ip_request == element.ip_request
    assert delegate.bandwidth_request == element.bandwidth_request
    assert delegate.port_mappings_request == element.port_mappings_request
    assert delegate.name == "/testname"


def test_selection_namespace_and_device_id():
    element = NetworkSelectionElement(name="net", namespace="ns1", device_id="0000:00:00.9")
    delegate = load_delegate_net_conf('{"name": "x", "type": "bridge"}', element, "", "")
    assert delegate.name == "ns1/net"
    assert delegate.device_id == "0000:00:00.9"
    other = load_delegate_net_conf('{"name": "x", "type": "bridge"}', element, "0000:00:00.1", "")
    assert other.device_id == "0000:00:00.1"


def test_delegate_names_are_delivered():
    single = load_net_conf(
        '{"name": "n", "type": "multus", "delegates": [{"name": "weave", "type": "weave-net"}]}'
    )
    assert [d.name for d in single.delegates] == ["weave"]
    listed = load_net_conf(MULTUS_WITH_LIST)
    assert [d.name for d in listed.delegates] == ["weave-list"]


@pytest.mark.parametrize(
    "ns_json, expected_len, filter_v4, filter_v6",
    [
        ('{"name": "foobar"}', None, True, True),
        ('{"name": "foobar", "default-route": []}', 0, True, True),
        ('{"name": "foobar", "default-route": ["10.1.1.1"]}', 1, False, True),
        ('{"name": "foobar", "default-route": ["10.1.1.1", "fc00::1"]}', 2, False, False),
    ],
)
def test_gateway_request(ns_json, expected_len, filter_v4, filter_v6):
    element = NetworkSelectionElement.from_dict(json.loads(ns_json))
    delegate = load_delegate_net_conf(MULTUS_WITH_LIST, element, "", "")
    check_gateway_config([delegate])
    if expected_len is None:
        assert delegate.gateway_request is None
    else:
        assert len(delegate.gateway_request) == expected_len
    assert delegate.is_filter_v4_gateway is filter_v4
    assert delegate.is_filter_v6_gateway is filter_v6


def test_gateway_ecmp_rejected():
    first = DelegateNetConf(gateway_request=[ipaddress.ip_address("10.0.0.1")])
    second = DelegateNetConf(gateway_request=[ipaddress.ip_address("10.0.0.2")])
    with pytest.raises(ConfigError, match="ECMP"):
        check_gateway_config([first, second])


def test_readiness_file_present(tmp_path):
    path = tmp_path / "ready"
    path.write_text("")
    assert wait_for_readiness_indicator_file(path, 0.01, 0.5) is None
    assert path.exists()


def test_readiness_file_timeout(tmp_path):
    with pytest.raises(TimeoutError):
        wait_for_readiness_indicator_file(tmp_path / "missing", 0.01, 0.05)