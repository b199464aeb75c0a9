import asyncio
import threading
import time

import pytest

from fakes import FakeExecutor
from headend.core.config import Settings
from headend.core.errors import RemoteCommandError
from headend.services.remote_task_service import (
    RemoteHost,
    RemoteTaskCategory,
    RemoteTaskService,
    RemoteTaskTimeoutError,
)


@pytest.mark.anyio("asyncio")
async def test_run_blocking_times_out():
    service = RemoteTaskService(max_connections=1)

    with pytest.raises(RemoteTaskTimeoutError) as exc:
        await service.run_blocking("pve1", time.sleep, 0.5, description="sleep", timeout=0.05)

    assert "timed out" in str(exc.value)
    assert service.get_metrics()["timed_out"] == 1


@pytest.mark.anyio("asyncio")
async def test_transfers_to_one_host_are_serialized():
    service = RemoteTaskService(max_connections=4)
    active = []
    peak = []
    lock = threading.Lock()

    def transfer():
        with lock:
            active.append(1)
            peak.append(len(active))
        time.sleep(0.02)
        with lock:
            active.pop()

    await asyncio.gather(
        *(
            service.run_blocking("pve1", transfer, description="upload", category=RemoteTaskCategory.TRANSFER)
            for _ in range(3)
        )
    )

    assert max(peak) == 1
    assert service.get_metrics()["completed"] == 3


@pytest.mark.anyio("asyncio")
async def test_run_checked_raises_on_non_zero_exit():
    executor = FakeExecutor()
    executor.on("qm start 100", stderr="VM is locked", exit_code=255)
    host = RemoteHost(executor, tasks=RemoteTaskService(max_connections=2))

    with pytest.raises(RemoteCommandError) as exc:
        await host.run_checked("qm start 100")

    assert exc.value.exit_code == 255
    assert "VM is locked" in str(exc.value)


@pytest.mark.anyio("asyncio")
async def test_run_passes_default_timeout_to_executor():
    executor = FakeExecutor()
    host = RemoteHost(executor, tasks=RemoteTaskService(max_connections=2), config=Settings(command_timeout=42))

    await host.run("true")
    await host.run("true", timeout=7)

    assert executor.timeouts == [42, 7]


@pytest.mark.anyio("asyncio")
async def test_run_json_rejects_invalid_output():
    executor = FakeExecutor()
    executor.on("pvesh get", stdout="not json")
    host = RemoteHost(executor, tasks=RemoteTaskService(max_connections=2))

    with pytest.raises(RemoteCommandError) as exc:
        await host.run_json("pvesh get /nodes --output-format json")

    assert "invalid JSON" in str(exc.value)
