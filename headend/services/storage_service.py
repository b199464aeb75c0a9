"""Storage pool operations for installer images on the hypervisor."""
from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from ..core.errors import AcquisitionError, DeploymentError
from ..core.models import StorageInfo
from .remote_task_service import RemoteHost, RemoteTaskCategory
from .ssh_service import ProgressCallback, shell_quote

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StoredImage:
    """An ISO file present on a storage pool."""

    storage: str
    filename: str
    path: str
    size: int = 0


class StorageService:
    """Locate, hash, download and upload ISO images on storage pools."""

    def __init__(self, host: RemoteHost) -> None:
        self._host = host
        self._settings = host.settings

    async def get_image_directory(self, storage: str) -> str:
        """Return the directory backing ``storage:iso/``."""

        default_dir = self._settings.default_iso_directory
        marker = shell_quote(f"{storage}:iso/path-check.iso")
        try:
            result = await self._host.run(
                f"pvesm path {marker} 2>/dev/null || echo {shell_quote(default_dir + '/path-check.iso')}",
                description="pvesm path",
            )
        except DeploymentError as exc:
            logger.warning("Could not resolve ISO directory for %s (%s); using %s", storage, exc, default_dir)
            return default_dir
        path = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else ""
        return posixpath.dirname(path) if path else default_dir

    async def list_images(self, storage: str) -> List[StoredImage]:
        directory = await self.get_image_directory(storage)
        result = await self._host.run(
            f"find {shell_quote(directory)} -maxdepth 1 -type f -name '*.iso' -printf '%s\\t%p\\n' 2>/dev/null || true",
            description=f"list images on {storage}",
        )
        images: List[StoredImage] = []
        for line in result.stdout.splitlines():
            size_text, _, path = line.strip().partition("\t")
            if not path.endswith(".iso"):
                continue
            images.append(
                StoredImage(
                    storage=storage,
                    filename=posixpath.basename(path),
                    path=path,
                    size=int(size_text) if size_text.isdigit() else 0,
                )
            )
        return images

    async def image_exists(self, storage: str, filename: str) -> bool:
        """Check a single pool for an exact filename."""

        directory = await self.get_image_directory(storage)
        result = await self._host.run(f"test -f {shell_quote(posixpath.join(directory, filename))}")
        if result.ok:
            return True

        result = await self._host.run(
            f"pvesm list {shell_quote(storage)} --content iso 2>/dev/null | grep -qF {shell_quote(filename)}"
        )
        return result.ok

    async def image_exists_on_any(self, storages: Iterable[StorageInfo], filename: str) -> Optional[str]:
        """Return the first pool holding ``filename``, or None."""

        for storage in storages:
            try:
                if await self.image_exists(storage.name, filename):
                    return storage.name
            except DeploymentError as exc:
                logger.info("Skipping %s while looking for %s: %s", storage.name, filename, exc)

        default_path = posixpath.join(self._settings.default_iso_directory, filename)
        try:
            result = await self._host.run(f"test -f {shell_quote(default_path)}")
        except DeploymentError:
            return None
        return "local" if result.ok else None

    async def find_image_by_hash(
        self, storages: Iterable[StorageInfo], md5: str
    ) -> Optional[Tuple[str, str]]:
        """Return (storage, filename) of the first ISO whose MD5 matches, hashing each pool in one command."""

        expected = md5.strip().lower()
        if not expected:
            return None

        for storage in storages:
            try:
                images = await self.list_images(storage.name)
                if not images:
                    continue
                paths = " ".join(shell_quote(image.path) for image in images)
                result = await self._host.run(
                    f"md5sum {paths} 2>/dev/null",
                    timeout=self._settings.hash_scan_timeout,
                    description=f"md5sum on {storage.name}",
                )
            except DeploymentError as exc:
                logger.info("Content hash scan of %s failed: %s", storage.name, exc)
                continue

            for line in result.stdout.splitlines():
                parts = line.split(None, 1)
                if len(parts) == 2 and parts[0].lower() == expected:
                    return storage.name, posixpath.basename(parts[1].strip().lstrip("*"))
        return None

    async def upload_image(
        self,
        local_path: str,
        storage: str,
        filename: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        """Upload a local file into the pool's ISO directory and return the remote path."""

        directory = await self.get_image_directory(storage)
        remote_path = posixpath.join(directory, filename or posixpath.basename(local_path))
        await self._host.upload(local_path, remote_path, on_progress)
        return remote_path

    async def detect_download_tool(self) -> str:
        for tool in ("wget", "curl"):
            result = await self._host.run(f"command -v {tool}")
            if result.ok:
                return tool
        raise AcquisitionError("neither wget nor curl found on the host")

    async def download_with_tool(self, storage: str, filename: str, url: str) -> str:
        """Fetch ``url`` into the pool with wget or curl, rejecting implausibly small results."""

        directory = await self.get_image_directory(storage)
        destination = posixpath.join(directory, filename)
        quoted_destination = shell_quote(destination)
        await self._host.run(f"mkdir -p {shell_quote(directory)}")

        tool = await self.detect_download_tool()
        if tool == "wget":
            command = f"wget -q --no-check-certificate -O {quoted_destination} {shell_quote(url)}"
        else:
            command = f"curl -ksfL -o {quoted_destination} {shell_quote(url)}"

        try:
            result = await self._host.run(
                command,
                timeout=self._settings.transfer_timeout,
                description=f"{tool} {filename}",
                category=RemoteTaskCategory.TRANSFER,
            )
        except DeploymentError as exc:
            await self._remove_partial(destination)
            raise AcquisitionError(f"{tool} download failed: {exc}") from exc

        if not result.ok:
            await self._remove_partial(destination)
            output = result.stderr.strip() or result.stdout.strip()
            raise AcquisitionError(f"{tool} download failed (exit {result.exit_code}): {output}")

        size = await self.file_size(destination)
        if size < self._settings.min_transfer_bytes:
            await self._remove_partial(destination)
            raise AcquisitionError(f"downloaded file too small ({size} bytes), likely failed")
        return destination

    async def file_size(self, remote_path: str) -> int:
        quoted = shell_quote(remote_path)
        result = await self._host.run(f"stat -c '%s' {quoted} 2>/dev/null || stat -f '%z' {quoted}")
        text = result.stdout.strip()
        return int(text) if text.isdigit() else 0

    async def _remove_partial(self, remote_path: str) -> None:
        try:
            await self._host.run(f"rm -f {shell_quote(remote_path)}")
        except DeploymentError as exc:
            logger.warning("Could not remove partial download %s: %s", remote_path, exc)


__all__ = ["StorageService", "StoredImage"]
