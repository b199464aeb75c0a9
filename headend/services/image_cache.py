"""Local cache of installer images awaiting upload."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional

from ..core.errors import AcquisitionError
from ..core.models import ImageFile
from .image_sources import ImageSource, ImageSourceError, ProgressCallback

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CachedImage:
    """A cached image ready to upload."""

    path: Path
    image: ImageFile
    cache_hit: bool


class ImageCache:
    """Keep downloaded images on the controller, keyed by filename."""

    def __init__(self, cache_dir: str, sources: Iterable[ImageSource] = ()) -> None:
        self.cache_dir = Path(cache_dir)
        self._sources: Dict[str, ImageSource] = {source.name: source for source in sources}

    def lookup(self, image: ImageFile) -> Optional[Path]:
        """Return the cached path when a usable copy exists.

        A symlink to an existing file or a regular file whose size matches the
        listing is a hit; content is not re-hashed. A listing without a size
        never matches a regular file. Dangling symlinks are removed.
        """

        path = self.cache_dir / image.filename
        if path.is_symlink():
            if path.exists():
                return path
            logger.info("Removing stale cache link %s", path)
            path.unlink()
            return None
        if path.is_file() and image.size > 0 and path.stat().st_size == image.size:
            return path
        return None

    def ensure_image(self, image: ImageFile, on_progress: Optional[ProgressCallback] = None) -> CachedImage:
        """Return a local copy of ``image``, downloading it through its source on a miss."""

        cached = self.lookup(image)
        if cached is not None:
            logger.info("Using cached image %s", cached)
            return CachedImage(path=cached, image=image, cache_hit=True)

        source = self._sources.get(image.source_name)
        if source is None:
            raise AcquisitionError(f"no image source named '{image.source_name}' for {image.filename}")

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        destination = self.cache_dir / image.filename
        logger.info("Downloading %s from %s into %s", image.filename, source.name, destination)
        try:
            source.download(image, str(destination), on_progress)
        except ImageSourceError as exc:
            raise AcquisitionError(f"downloading {image.filename}: {exc}") from exc
        return CachedImage(path=destination, image=image, cache_hit=False)


__all__ = ["CachedImage", "ImageCache"]
