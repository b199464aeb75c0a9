import json

import pytest

from fakes import FakeExecutor
from headend.core.errors import CreationError, TransportError
from headend.core.models import ComponentConfig, ComponentType
from headend.core.topology import VMNetwork, build_vm_config
from headend.services import vm_service as vm_module
from headend.services.remote_task_service import RemoteHost, RemoteTaskService


def _service(executor, local_node="pve1"):
    host = RemoteHost(executor, tasks=RemoteTaskService(max_connections=2))
    return vm_module.VMService(host, local_node=local_node)


def _vm_config(node):
    component = ComponentConfig(type=ComponentType.DIRECTOR, cpu=8, ram_gb=16, disk_gb=100)
    return build_vm_config(
        component,
        prefix="lab",
        index=0,
        vmid=100,
        storage="local-lvm",
        networks=[VMNetwork(bridge="vmbr0")],
        node=node,
    )


@pytest.mark.anyio("asyncio")
async def test_create_on_local_node_uses_qm():
    executor = FakeExecutor()

    await _service(executor).create_vm(_vm_config("pve1"))

    command = executor.calls[0]
    assert command.startswith("qm create 100 ")
    assert "--name lab-director" in command


@pytest.mark.anyio("asyncio")
async def test_create_on_other_node_uses_node_api():
    executor = FakeExecutor()

    await _service(executor).create_vm(_vm_config("pve2"))

    assert executor.calls[0].startswith("pvesh create /nodes/pve2/qemu --vmid 100 ")


@pytest.mark.anyio("asyncio")
async def test_start_and_stop_commands():
    executor = FakeExecutor()
    service = _service(executor)

    await service.start_vm(100)
    await service.start_vm(101, "pve2")
    await service.stop_vm(100, timeout=10)

    assert executor.calls == [
        "qm start 100",
        "pvesh create /nodes/pve2/qemu/101/status/start",
        "qm stop 100 --timeout 10",
    ]


@pytest.mark.anyio("asyncio")
async def test_failed_action_raises_vm_control_error():
    executor = FakeExecutor()
    executor.on("qm start 100", stderr="VM 100 already running", exit_code=255)

    with pytest.raises(vm_module.VMControlError) as exc:
        await _service(executor).start_vm(100)

    assert exc.value.action == "start"
    assert exc.value.vmid == 100
    assert "already running" in exc.value.message
    assert isinstance(exc.value, CreationError)


@pytest.mark.anyio("asyncio")
async def test_transport_errors_are_wrapped(monkeypatch):
    service = _service(FakeExecutor())

    async def failing_run(*args, **kwargs):
        raise TransportError("connection reset")

    monkeypatch.setattr(service._host, "run", failing_run)

    with pytest.raises(vm_module.VMControlError) as exc:
        await service.start_vm(100)

    assert "SSH communication failed" in exc.value.message


@pytest.mark.anyio("asyncio")
async def test_destroy_stops_first_and_purges():
    executor = FakeExecutor()

    await _service(executor).destroy_vm(100)

    assert executor.calls == ["qm stop 100 2>/dev/null || true", "qm destroy 100 --purge"]


@pytest.mark.anyio("asyncio")
async def test_allocate_vmid_parses_quoted_output():
    executor = FakeExecutor()
    executor.on("pvesh get /cluster/nextid", stdout='"105"\n')

    assert await _service(executor).allocate_vmid() == 105


@pytest.mark.anyio("asyncio")
async def test_allocate_vmid_rejects_garbage():
    executor = FakeExecutor()
    executor.on("pvesh get /cluster/nextid", stdout="oops\n")

    with pytest.raises(CreationError):
        await _service(executor).allocate_vmid()


@pytest.mark.anyio("asyncio")
async def test_vm_status_local_and_remote():
    executor = FakeExecutor()
    executor.on("qm status 100", stdout="status: running\n")
    executor.on("status/current", stdout=json.dumps({"status": "stopped"}))
    service = _service(executor)

    assert await service.get_vm_status(100) == "running"
    assert await service.get_vm_status(101, "pve2") == "stopped"


@pytest.mark.anyio("asyncio")
async def test_destroy_tagged_continues_after_failures():
    executor = FakeExecutor()
    executor.on(
        "pvesh get /cluster/resources",
        stdout=json.dumps(
            [
                {"vmid": 100, "name": "lab-director", "node": "pve1", "tags": "versa-deployer;versa-deploy-lab"},
                {"vmid": 101, "name": "lab-router", "node": "pve1", "tags": "versa-deployer;versa-deploy-lab"},
                {"vmid": 102, "name": "other-router", "node": "pve1", "tags": "versa-deployer;versa-deploy-other"},
            ]
        ),
    )
    executor.on("qm destroy 100", stderr="locked", exit_code=1)

    destroyed = await _service(executor).destroy_tagged("versa-deploy-lab")

    assert destroyed == [101]
    assert executor.count("qm destroy 102") == 0


def test_console_url_uses_configured_host():
    service = _service(FakeExecutor())
    assert service.console_url(100) == "https://pve.test:8006/#v1:0:qemu/100"
