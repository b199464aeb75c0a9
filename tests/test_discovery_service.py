import json

import pytest

from fakes import FakeExecutor
from headend.core.errors import ConfigurationError
from headend.core.models import NodeStatus
from headend.services import discovery_service as discovery_module
from headend.services.remote_task_service import RemoteHost, RemoteTaskService

GIB = 1024 ** 3

PVESM_STATUS = """\
Name             Type     Status           Total            Used       Available        %
local             dir     active        98497780        12345678        81102340   12.53%
local-lvm     lvmthin     active       832888832       102400000       730488832   12.29%
nfs-iso           nfs   inactive               0               0               0    0.00%
"""

INTERFACES = """\
auto lo
iface lo inet loopback

auto vmbr0
iface vmbr0 inet static
        address 192.168.1.10/24
        gateway 192.168.1.1
        bridge-ports eno1
        bridge-stp off
        bridge-fd 0
#Management

auto vmbr1
iface vmbr1 inet manual
        bridge-ports none
        bridge-vlan-aware yes
        bridge-vids 2-4 100
"""

QM_LIST = """\
      VMID NAME                 STATUS     MEM(MB)    BOOTDISK(GB) PID
       100 lab-director         running    16384             100.00 1234
       101 lab-router           stopped    4096               20.00 0
"""


def _host(executor):
    return RemoteHost(executor, tasks=RemoteTaskService(max_connections=4))


def test_parse_version_and_cluster_name():
    assert discovery_module.parse_version("pve-manager/8.1.4/ec5affc9e41f1d79 (running kernel: 6.5.11-8-pve)") == "8.1.4"
    output = "Cluster information\n-------------------\nName:             homelab\nConfig Version:   3\n"
    assert discovery_module.parse_cluster_name(output) == "homelab"


def test_parse_storage_status_converts_kib_to_gb():
    status = discovery_module.parse_storage_status(PVESM_STATUS)

    assert status["local"].total_gb == 93
    assert status["local"].available_gb == 77
    assert status["local-lvm"].available_gb == 696
    assert status["nfs-iso"].active is False


def test_merge_storage_applies_content_and_skips_disabled():
    config = [
        {"storage": "local", "type": "dir", "content": "iso,vztmpl,backup"},
        {"storage": "local-lvm", "type": "lvmthin", "content": "images,rootdir"},
        {"storage": "old", "type": "dir", "content": "iso", "disable": 1},
    ]

    storage = discovery_module.merge_storage(config, discovery_module.parse_storage_status(PVESM_STATUS))

    assert [item.name for item in storage] == ["local", "local-lvm"]
    assert storage[0].supports_iso and not storage[0].supports_vm_disks
    assert storage[1].supports_vm_disks
    assert storage[1].available_gb == 696


def test_parse_network_interfaces_reads_bridges():
    networks = discovery_module.parse_network_interfaces(INTERFACES)

    assert [network.name for network in networks] == ["vmbr0", "vmbr1"]
    assert networks[0].cidr == "192.168.1.10/24"
    assert networks[0].interface == "eno1"
    assert networks[0].comments == "Management"
    assert networks[1].vlan_aware is True
    assert networks[1].vlans == [2, 3, 4, 100]


def test_parse_qm_list_and_tags():
    vms = discovery_module.parse_qm_list(QM_LIST)

    assert [(vm.vmid, vm.name, vm.status) for vm in vms] == [
        (100, "lab-director", "running"),
        (101, "lab-router", "stopped"),
    ]
    assert discovery_module.parse_tags("versa-deployer;versa-router, extra") == [
        "versa-deployer",
        "versa-router",
        "extra",
    ]


def test_parse_meminfo_reports_used_memory():
    total, used = discovery_module.parse_meminfo("MemTotal: 67108864 kB\nMemAvailable: 50331648 kB\n")
    assert (total, used) == (64, 16)


def _discovery_executor():
    executor = FakeExecutor()
    executor.on("pveversion", stdout="pve-manager/8.1.4/ec5affc9e41f1d79 (running kernel: 6.5.11-8-pve)\n")
    executor.on("pvecm status", exit_code=2)
    executor.on("hostname -s", stdout="pve1\n")
    executor.on("grep -c running", stdout="1\n")
    executor.on(
        "pvesh get /nodes --output-format json",
        stdout=json.dumps(
            [{"node": "pve1", "status": "online", "maxcpu": 16, "cpu": 0.25, "maxmem": 64 * GIB, "mem": 16 * GIB}]
        ),
    )
    executor.on("pvesm status", stdout=PVESM_STATUS)
    executor.on(
        "pvesh get /storage --output-format json",
        stdout=json.dumps([{"storage": "local", "type": "dir", "content": "iso,vztmpl"}]),
    )
    executor.on("cat /etc/network/interfaces", stdout=INTERFACES)
    executor.on(
        "pvesh get /cluster/resources",
        stdout=json.dumps(
            [
                {"type": "qemu", "vmid": 100, "name": "lab-director", "status": "running", "node": "pve1",
                 "tags": "versa-deployer;versa-director"},
                {"type": "qemu", "vmid": 150, "name": "other", "status": "stopped", "node": "pve1"},
                {"type": "lxc", "vmid": 200, "name": "container", "status": "running", "node": "pve1"},
            ]
        ),
    )
    return executor


@pytest.mark.anyio("asyncio")
async def test_discover_collects_all_sections():
    service = discovery_module.DiscoveryService(_host(_discovery_executor()))

    info = await service.discover()

    assert info.version == "8.1.4"
    assert info.is_cluster is False
    node = info.nodes[0]
    assert (node.name, node.status, node.cpu_cores, node.cpu_used) == ("pve1", NodeStatus.ONLINE, 16, 4)
    assert (node.ram_gb, node.ram_used_gb, node.running_vms, node.is_local) == (64, 16, 1, True)
    assert [storage.name for storage in info.storage] == ["local"]
    assert [network.name for network in info.networks] == ["vmbr0", "vmbr1"]
    assert [vm.vmid for vm in info.existing_vms] == [100, 150]
    assert info.local_node() == "pve1"


@pytest.mark.anyio("asyncio")
async def test_failed_section_is_left_empty():
    executor = _discovery_executor()
    executor.on("pvesm status", exit_code=1, stderr="storage daemon unavailable")
    service = discovery_module.DiscoveryService(_host(executor))

    info = await service.discover()

    assert info.storage == []
    assert [node.name for node in info.nodes] == ["pve1"]
    assert len(info.networks) == 2


@pytest.mark.anyio("asyncio")
async def test_non_proxmox_host_is_a_configuration_error():
    executor = FakeExecutor()
    executor.on("pveversion", exit_code=127, stderr="pveversion: command not found")
    service = discovery_module.DiscoveryService(_host(executor))

    with pytest.raises(ConfigurationError) as exc:
        await service.discover()

    assert "not a Proxmox host" in str(exc.value)


@pytest.mark.anyio("asyncio")
async def test_find_existing_deployments_filters_by_tag():
    service = discovery_module.DiscoveryService(_host(_discovery_executor()))

    vms = await service.find_existing_deployments()

    assert [vm.name for vm in vms] == ["lab-director"]


@pytest.mark.anyio("asyncio")
async def test_get_vms_falls_back_to_qm_list():
    executor = FakeExecutor()
    executor.on("pvesh get /cluster/resources", exit_code=1)
    executor.on("qm list", stdout=QM_LIST)
    executor.on("qm config 100", stdout="tags: versa-deployer;versa-director\n")
    service = discovery_module.DiscoveryService(_host(executor))

    vms = await service.get_vms()

    assert vms[0].tags == ["versa-deployer", "versa-director"]
    assert vms[1].tags == []
