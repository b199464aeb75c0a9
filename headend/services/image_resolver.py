"""Resolve required images to a (storage, filename) binding on the host.

Resolution walks an ordered list of strategies. Each strategy either returns
a ``ResolvedImage``, returns ``None`` when it does not apply, or raises when
it applied and failed; the resolver then moves on to the next one.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence

from ..core.errors import AcquisitionError, DeploymentError
from ..core.models import ImageFile, ResolutionMethod, ResolvedImage, StorageInfo
from .download_task_service import DownloadTaskService
from .image_cache import ImageCache
from .image_sources import supports_direct_download
from .storage_service import StorageService

logger = logging.getLogger(__name__)

LogCallback = Callable[[str], None]


def format_bytes(value: int) -> str:
    """Render a byte count with a GB/MB/KB unit."""

    for unit, size in (("GB", 1024 ** 3), ("MB", 1024 ** 2), ("KB", 1024)):
        if value >= size:
            return f"{value / size:.1f} {unit}"
    return f"{value} B"


class ThrottledProgress:
    """Progress callback that emits at most once per interval, plus once at completion.

    Transfer callbacks arrive on worker threads, so the last-emitted timestamp
    is guarded by a lock.
    """

    def __init__(
        self,
        log: LogCallback,
        action: str,
        filename: str,
        interval: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._log = log
        self._action = action
        self._filename = filename
        self._interval = interval
        self._clock = clock
        self._lock = threading.Lock()
        self._last_emit: Optional[float] = None
        self._completed = False

    def __call__(self, done: int, total: int) -> None:
        if total <= 0:
            return
        now = self._clock()
        with self._lock:
            finished = done >= total
            if finished:
                if self._completed:
                    return
                self._completed = True
            elif self._last_emit is not None and now - self._last_emit < self._interval:
                return
            self._last_emit = now
        percent = int(done * 100 / total)
        self._log(
            f"  {self._action} {self._filename}: {percent}% ({format_bytes(done)} / {format_bytes(total)})"
        )


@dataclass(slots=True)
class ImageRequest:
    """Everything a strategy needs to place one image."""

    filename: str
    metadata: Optional[ImageFile]
    storages: List[StorageInfo]
    node: Optional[str]

    @property
    def target(self) -> StorageInfo:
        """Upload/download target: the ISO pool with the most free space."""
        return self.storages[0]


class ResolutionStrategy(Protocol):
    name: str

    async def resolve(self, request: ImageRequest) -> Optional[ResolvedImage]:
        ...


class ExistingImageStrategy:
    """Reuse a file with the exact requested name on any pool."""

    name = "existing file"

    def __init__(self, storage: StorageService) -> None:
        self._storage = storage

    async def resolve(self, request: ImageRequest) -> Optional[ResolvedImage]:
        found = await self._storage.image_exists_on_any(request.storages, request.filename)
        if found is None:
            return None
        return ResolvedImage(
            requested=request.filename,
            storage=found,
            filename=request.filename,
            method=ResolutionMethod.EXISTING,
        )


class ContentHashStrategy:
    """Reuse any file whose checksum matches, whatever its name."""

    name = "content hash"

    def __init__(self, storage: StorageService) -> None:
        self._storage = storage

    async def resolve(self, request: ImageRequest) -> Optional[ResolvedImage]:
        if request.metadata is None or not request.metadata.md5:
            return None
        match = await self._storage.find_image_by_hash(request.storages, request.metadata.md5)
        if match is None:
            return None
        storage, filename = match
        return ResolvedImage(
            requested=request.filename,
            storage=storage,
            filename=filename,
            method=ResolutionMethod.CONTENT_HASH,
        )


class DirectDownloadStrategy:
    """Have the host fetch the image through a background download task."""

    name = "direct download"

    def __init__(self, storage: StorageService, downloads: DownloadTaskService, log: LogCallback) -> None:
        self._storage = storage
        self._downloads = downloads
        self._log = log

    async def resolve(self, request: ImageRequest) -> Optional[ResolvedImage]:
        if request.metadata is None or not supports_direct_download(request.metadata) or not request.node:
            return None
        target = request.target.name
        self._log(f"Downloading {request.filename} directly on Proxmox host into {target}...")
        await self._downloads.download(
            request.node, target, request.filename, request.metadata.source_url, self._log
        )
        if not await self._storage.image_exists(target, request.filename):
            raise AcquisitionError(f"{request.filename} not found on {target} after direct download")
        return ResolvedImage(
            requested=request.filename,
            storage=target,
            filename=request.filename,
            method=ResolutionMethod.DIRECT_DOWNLOAD,
        )


class ToolDownloadStrategy:
    """Run wget or curl on the host."""

    name = "wget/curl download"

    def __init__(self, storage: StorageService, log: LogCallback) -> None:
        self._storage = storage
        self._log = log

    async def resolve(self, request: ImageRequest) -> Optional[ResolvedImage]:
        if request.metadata is None or not supports_direct_download(request.metadata):
            return None
        target = request.target.name
        self._log(f"Downloading {request.filename} on Proxmox host with wget/curl...")
        await self._storage.download_with_tool(target, request.filename, request.metadata.source_url)
        if not await self._storage.image_exists(target, request.filename):
            raise AcquisitionError(f"{request.filename} not found on {target} after tool download")
        return ResolvedImage(
            requested=request.filename,
            storage=target,
            filename=request.filename,
            method=ResolutionMethod.TOOL_DOWNLOAD,
        )


class CacheUploadStrategy:
    """Fetch into the local cache, then upload to the target pool."""

    name = "local cache upload"

    def __init__(
        self,
        storage: StorageService,
        cache: ImageCache,
        log: LogCallback,
        progress_interval: float,
    ) -> None:
        self._storage = storage
        self._cache = cache
        self._log = log
        self._progress_interval = progress_interval

    async def resolve(self, request: ImageRequest) -> Optional[ResolvedImage]:
        if request.metadata is None:
            return None
        download_progress = ThrottledProgress(self._log, "Downloading", request.filename, self._progress_interval)
        cached = await asyncio.to_thread(self._cache.ensure_image, request.metadata, download_progress)
        if cached.cache_hit:
            self._log(f"Using cached {request.filename}")

        target = request.target.name
        self._log(f"Uploading {request.filename} to {target}...")
        upload_progress = ThrottledProgress(self._log, "Uploading", request.filename, self._progress_interval)
        await self._storage.upload_image(str(cached.path), target, request.filename, upload_progress)
        return ResolvedImage(
            requested=request.filename,
            storage=target,
            filename=request.filename,
            method=ResolutionMethod.UPLOAD,
        )


@dataclass(slots=True)
class ResolutionAttempt:
    strategy: str
    error: str


@dataclass(slots=True)
class _RunState:
    by_hash: Dict[str, ResolvedImage] = field(default_factory=dict)


class ImageResolver:
    """Resolve images through an ordered strategy chain with content dedup."""

    def __init__(self, strategies: Sequence[ResolutionStrategy], log: Optional[LogCallback] = None) -> None:
        self.strategies: List[ResolutionStrategy] = list(strategies)
        self._log = log or (lambda message: None)
        self._run = _RunState()

    @classmethod
    def default_chain(
        cls,
        storage: StorageService,
        downloads: DownloadTaskService,
        cache: ImageCache,
        log: LogCallback,
        progress_interval: float,
    ) -> "ImageResolver":
        return cls(
            [
                ExistingImageStrategy(storage),
                ContentHashStrategy(storage),
                DirectDownloadStrategy(storage, downloads, log),
                ToolDownloadStrategy(storage, log),
                CacheUploadStrategy(storage, cache, log, progress_interval),
            ],
            log,
        )

    def begin_run(self) -> None:
        """Forget content matches from a previous run."""
        self._run = _RunState()

    async def resolve_all(
        self,
        filenames: Iterable[str],
        catalog: Dict[str, ImageFile],
        storages: List[StorageInfo],
        node: Optional[str],
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> Dict[str, ResolvedImage]:
        """Resolve each distinct filename once, in order.

        ``on_progress`` receives ``(done, total)`` before each image and once
        more when every image is ready.
        """

        if not storages:
            raise AcquisitionError("no ISO storage available")

        distinct = list(dict.fromkeys(filenames))
        total = len(distinct)
        self.begin_run()
        resolved: Dict[str, ResolvedImage] = {}
        for index, filename in enumerate(distinct):
            if on_progress is not None:
                on_progress(index, total)
            self._log(f"Checking ISO: {filename}")
            request = ImageRequest(filename=filename, metadata=catalog.get(filename), storages=storages, node=node)
            resolved[filename] = await self.resolve(request)
        if on_progress is not None:
            on_progress(total, total)
        return resolved

    async def resolve(self, request: ImageRequest) -> ResolvedImage:
        metadata = request.metadata
        content_hash = metadata.md5.lower() if metadata is not None and metadata.md5 else None
        if content_hash and content_hash in self._run.by_hash:
            previous = self._run.by_hash[content_hash]
            self._log(f"ISO {request.filename} has the same content as {previous.filename}; reusing it")
            return ResolvedImage(
                requested=request.filename,
                storage=previous.storage,
                filename=previous.filename,
                method=ResolutionMethod.CONTENT_HASH,
            )

        attempts: List[ResolutionAttempt] = []
        for strategy in self.strategies:
            try:
                result = await strategy.resolve(request)
            except (DeploymentError, OSError) as exc:
                logger.info("Image strategy '%s' failed for %s: %s", strategy.name, request.filename, exc)
                self._log(f"{strategy.name.capitalize()} of {request.filename} failed: {exc}")
                attempts.append(ResolutionAttempt(strategy=strategy.name, error=str(exc)))
                continue
            if result is None:
                continue

            self._log(f"ISO {request.filename} ready on {result.storage} as {result.filename} ({result.method.value})")
            if content_hash:
                self._run.by_hash[content_hash] = result
            return result

        if metadata is None:
            raise AcquisitionError(
                f"ISO metadata not found for {request.filename}; ensure image sources are configured"
            )
        details = "; ".join(f"{attempt.strategy}: {attempt.error}" for attempt in attempts)
        raise AcquisitionError(
            f"could not acquire {request.filename}" + (f" ({details})" if details else "")
        )


__all__ = [
    "CacheUploadStrategy",
    "ContentHashStrategy",
    "DirectDownloadStrategy",
    "ExistingImageStrategy",
    "ImageRequest",
    "ImageResolver",
    "ResolutionStrategy",
    "ThrottledProgress",
    "ToolDownloadStrategy",
    "format_bytes",
]
