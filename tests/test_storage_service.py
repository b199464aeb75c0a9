import pytest

from fakes import FakeExecutor
from headend.core.config import Settings
from headend.core.errors import AcquisitionError
from headend.core.models import StorageInfo
from headend.services.remote_task_service import RemoteHost, RemoteTaskService
from headend.services.storage_service import StorageService

NFS_DIR = "/mnt/pve/nfs-iso/template/iso"


def _service(executor, **overrides):
    settings = Settings(**overrides)
    host = RemoteHost(executor, tasks=RemoteTaskService(max_connections=2), config=settings)
    return StorageService(host)


@pytest.mark.anyio("asyncio")
async def test_image_directory_comes_from_pvesm_path():
    executor = FakeExecutor()
    executor.on("pvesm path", stdout=f"{NFS_DIR}/path-check.iso\n")

    directory = await _service(executor).get_image_directory("nfs-iso")

    assert directory == NFS_DIR
    assert "pvesm path nfs-iso:iso/path-check.iso" in executor.calls[0]


@pytest.mark.anyio("asyncio")
async def test_image_directory_defaults_when_path_is_empty():
    directory = await _service(FakeExecutor()).get_image_directory("local")
    assert directory == "/var/lib/vz/template/iso"


@pytest.mark.anyio("asyncio")
async def test_list_images_parses_find_output():
    executor = FakeExecutor()
    executor.on("pvesm path", stdout=f"{NFS_DIR}/path-check.iso\n")
    executor.on("find ", stdout=f"4096\t{NFS_DIR}/a.iso\nbad line\n12\t{NFS_DIR}/notes.txt\n")

    images = await _service(executor).list_images("nfs-iso")

    assert [(image.filename, image.size, image.path) for image in images] == [("a.iso", 4096, f"{NFS_DIR}/a.iso")]


@pytest.mark.anyio("asyncio")
async def test_image_exists_falls_back_to_pvesm_list():
    executor = FakeExecutor()
    executor.on("test -f", exit_code=1)

    assert await _service(executor).image_exists("local", "a.iso") is True
    assert executor.count("pvesm list local --content iso") == 1


@pytest.mark.anyio("asyncio")
async def test_image_exists_on_any_returns_none_when_missing():
    executor = FakeExecutor()
    executor.on("test -f", exit_code=1)
    executor.on("grep -qF", exit_code=1)
    storages = [StorageInfo(name="local", content=["iso"]), StorageInfo(name="nfs-iso", content=["iso"])]

    assert await _service(executor).image_exists_on_any(storages, "a.iso") is None
    assert executor.count("grep -qF") == 2


@pytest.mark.anyio("asyncio")
async def test_find_image_by_hash_matches_case_insensitively():
    executor = FakeExecutor()
    executor.on("find ", stdout="10\t/var/lib/vz/template/iso/a.iso\n20\t/var/lib/vz/template/iso/b.iso\n")
    executor.on(
        "md5sum",
        stdout=(
            "0123456789abcdef0123456789abcdef  /var/lib/vz/template/iso/a.iso\n"
            "FEDCBA9876543210FEDCBA9876543210 */var/lib/vz/template/iso/b.iso\n"
        ),
    )
    storages = [StorageInfo(name="local", content=["iso"])]

    match = await _service(executor).find_image_by_hash(storages, "fedcba9876543210fedcba9876543210")

    assert match == ("local", "b.iso")
    assert executor.count("md5sum") == 1


@pytest.mark.anyio("asyncio")
async def test_find_image_by_hash_ignores_blank_digest():
    executor = FakeExecutor()
    assert await _service(executor).find_image_by_hash([StorageInfo(name="local")], "  ") is None
    assert executor.calls == []


@pytest.mark.anyio("asyncio")
async def test_tool_download_uses_curl_and_rejects_small_files():
    executor = FakeExecutor()
    executor.on("command -v wget", exit_code=1)
    executor.on("stat -c", stdout="100\n")
    service = _service(executor)

    with pytest.raises(AcquisitionError) as exc:
        await service.download_with_tool("local", "a.iso", "https://mirror.example.com/a.iso")

    assert "too small" in str(exc.value)
    assert executor.count("curl -ksfL -o /var/lib/vz/template/iso/a.iso") == 1
    assert executor.count("rm -f /var/lib/vz/template/iso/a.iso") == 1


@pytest.mark.anyio("asyncio")
async def test_tool_download_failure_removes_partial_file():
    executor = FakeExecutor()
    executor.on("wget -q", stderr="404 Not Found", exit_code=8)

    with pytest.raises(AcquisitionError) as exc:
        await _service(executor).download_with_tool("local", "a.iso", "https://mirror.example.com/a.iso")

    assert "exit 8" in str(exc.value)
    assert executor.count("rm -f") == 1


@pytest.mark.anyio("asyncio")
async def test_missing_download_tools_is_an_acquisition_error():
    executor = FakeExecutor()
    executor.on("command -v", exit_code=1)

    with pytest.raises(AcquisitionError):
        await _service(executor).detect_download_tool()


@pytest.mark.anyio("asyncio")
async def test_upload_targets_pool_directory(tmp_path):
    local = tmp_path / "router.iso"
    local.write_bytes(b"data")
    executor = FakeExecutor()

    remote = await _service(executor).upload_image(str(local), "local", "versa-router.iso")

    assert remote == "/var/lib/vz/template/iso/versa-router.iso"
    assert executor.uploads == [(str(local), remote)]
