"""Image sources that list and fetch installer ISOs."""
from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol
from urllib.parse import unquote, urljoin, urlparse

import httpx

from ..core.models import ComponentType, ImageFile

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

SOURCE_TYPE_HTTP = "http"
SOURCE_TYPE_LOCAL = "local"

_VERSION_PATTERN = re.compile(r"v?(\d+\.\d+\.\d+(?:-[A-Za-z0-9]+)?)")
_HREF_PATTERN = re.compile(r"""href\s*=\s*["']([^"'#?]+)["']""", re.IGNORECASE)
_CHUNK_SIZE = 1024 * 1024


class ImageSourceError(RuntimeError):
    """Raised when a source cannot be listed or a file cannot be fetched."""


class ImageSource(Protocol):
    """A place installer images can be listed and fetched from."""

    name: str
    type: str
    url: str

    def list(self) -> List[ImageFile]:
        ...

    def download(self, image: ImageFile, dest_path: str, on_progress: Optional[ProgressCallback] = None) -> None:
        ...


def detect_component(filename: str) -> Optional[ComponentType]:
    """Guess the component role from an image filename."""

    lower = filename.lower()
    if "director" in lower:
        return ComponentType.DIRECTOR
    if "analytics" in lower or "van" in lower:
        return ComponentType.ANALYTICS
    if "concerto" in lower:
        return ComponentType.CONCERTO
    if "flexvnf" in lower or "vos" in lower or "branch" in lower:
        return ComponentType.FLEXVNF
    return None


def extract_version(filename: str) -> str:
    match = _VERSION_PATTERN.search(filename)
    return match.group(1) if match else ""


def parse_image_filename(filename: str, source_name: str, source_type: str, source_url: str) -> ImageFile:
    return ImageFile(
        filename=filename,
        component=detect_component(filename),
        version=extract_version(filename),
        source_name=source_name,
        source_type=source_type,
        source_url=source_url,
    )


def read_md5_text(text: str) -> Optional[str]:
    """Return the checksum from ``md5sum``-style file contents."""

    parts = text.strip().split()
    if not parts or not re.fullmatch(r"[0-9a-fA-F]{32}", parts[0]):
        return None
    return parts[0].lower()


def supports_direct_download(image: ImageFile) -> bool:
    """Whether the host can fetch the image itself, bypassing the controller."""

    return image.source_type == SOURCE_TYPE_HTTP and image.source_url.lower().startswith(("http://", "https://"))


class HTTPImageSource:
    """Directory-listing web server exposing ``*.iso`` files and ``*.iso.md5`` companions."""

    type = SOURCE_TYPE_HTTP

    def __init__(
        self,
        url: str,
        name: Optional[str] = None,
        *,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.url = url if url.endswith("/") else f"{url}/"
        self.name = name or url
        self._timeout = timeout
        self._client = client

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self._timeout, follow_redirects=True)
        return self._client

    def list(self) -> List[ImageFile]:
        try:
            response = self._http().get(self.url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ImageSourceError(f"listing {self.url}: {exc}") from exc

        links: Dict[str, str] = {}
        for href in _HREF_PATTERN.findall(response.text):
            absolute = urljoin(self.url, href)
            filename = unquote(Path(urlparse(absolute).path).name)
            if filename:
                links[filename] = absolute

        images: List[ImageFile] = []
        for filename, link in links.items():
            if not filename.lower().endswith(".iso"):
                continue
            image = parse_image_filename(filename, self.name, self.type, link)
            md5_link = links.get(f"{filename}.md5")
            if md5_link:
                image = image.model_copy(update={"md5": self._fetch_md5(md5_link)})
            images.append(image)

        logger.info("Found %d image(s) at %s", len(images), self.url)
        return images

    def _fetch_md5(self, url: str) -> Optional[str]:
        try:
            response = self._http().get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Could not read checksum file %s: %s", url, exc)
            return None
        return read_md5_text(response.text)

    def download(self, image: ImageFile, dest_path: str, on_progress: Optional[ProgressCallback] = None) -> None:
        partial_path = f"{dest_path}.part"
        try:
            with self._http().stream("GET", image.source_url) as response:
                response.raise_for_status()
                total = int(response.headers.get("content-length") or image.size or 0)
                downloaded = 0
                with open(partial_path, "wb") as handle:
                    for chunk in response.iter_bytes(_CHUNK_SIZE):
                        handle.write(chunk)
                        downloaded += len(chunk)
                        if on_progress is not None:
                            on_progress(downloaded, total)
        except (httpx.HTTPError, OSError) as exc:
            Path(partial_path).unlink(missing_ok=True)
            raise ImageSourceError(f"downloading {image.source_url}: {exc}") from exc
        os.replace(partial_path, dest_path)


class LocalImageSource:
    """A directory on the controller holding ISO files."""

    type = SOURCE_TYPE_LOCAL

    def __init__(self, path: str, name: Optional[str] = None) -> None:
        self.url = path
        self.name = name or path
        self._root = Path(path).expanduser()

    def list(self) -> List[ImageFile]:
        if not self._root.is_dir():
            raise ImageSourceError(f"{self._root} is not a directory")

        images: List[ImageFile] = []
        for path in sorted(self._root.rglob("*.iso")):
            if not path.is_file():
                continue
            image = parse_image_filename(path.name, self.name, self.type, str(path))
            md5_path = path.with_name(f"{path.name}.md5")
            md5 = read_md5_text(md5_path.read_text()) if md5_path.is_file() else None
            images.append(image.model_copy(update={"size": path.stat().st_size, "md5": md5}))
        return images

    def download(self, image: ImageFile, dest_path: str, on_progress: Optional[ProgressCallback] = None) -> None:
        """Link the file into place instead of copying it."""

        source = Path(image.source_url).resolve()
        destination = Path(dest_path)
        if destination.is_symlink() or destination.exists():
            destination.unlink()
        try:
            destination.symlink_to(source)
        except OSError as exc:
            raise ImageSourceError(f"linking {source} into cache: {exc}") from exc
        if on_progress is not None:
            size = source.stat().st_size
            on_progress(size, size)


def create_source(url: str, name: Optional[str] = None, source_type: Optional[str] = None) -> ImageSource:
    """Build a source from a URL or path, detecting the type when not given."""

    detected = source_type
    if not detected:
        lower = url.lower()
        if lower.startswith(("http://", "https://")):
            detected = SOURCE_TYPE_HTTP
        elif url.startswith(("/", "~")) or Path(url).expanduser().exists():
            detected = SOURCE_TYPE_LOCAL
        else:
            detected = SOURCE_TYPE_HTTP

    if detected == SOURCE_TYPE_HTTP:
        return HTTPImageSource(url, name)
    if detected == SOURCE_TYPE_LOCAL:
        return LocalImageSource(url, name)
    raise ImageSourceError(f"unknown source type: {detected}")


__all__ = [
    "HTTPImageSource",
    "ImageSource",
    "ImageSourceError",
    "LocalImageSource",
    "create_source",
    "detect_component",
    "extract_version",
    "parse_image_filename",
    "read_md5_text",
    "supports_direct_download",
]
