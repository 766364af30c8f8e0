"""Asset source protocol and a filesystem-backed implementation."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Protocol

from PIL import ExifTags, Image, ImageOps, UnidentifiedImageError

from photo_embeddings.extractor import downsample
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "assets"})

DEFAULT_IMAGE_EXTENSIONS: frozenset[str] = frozenset({".jpg", ".jpeg", ".png", ".heic", ".webp"})

_EXIF_DATETIME_FORMAT = "%Y:%m:%d %H:%M:%S"
_EXIF_IFD_POINTER = 0x8769


@dataclass(frozen=True)
class PhotoRef:
    """Stable reference to a photo owned by the asset source."""

    photo_id: str
    creation_time: float
    modification_time: float


class AssetSource(Protocol):
    """Read-only view of the media library."""

    def enumerate(self, created_after: float | None = None, newest_first: bool = True) -> list[PhotoRef]:
        """Return photos with ``creation_time > created_after`` sorted by creation time."""
        ...

    def get(self, photo_id: str) -> PhotoRef | None:
        ...

    def exists(self, photo_id: str) -> bool:
        ...

    def load_image(self, photo_id: str, max_dimension: int) -> Image.Image | None:
        """Decode ``photo_id`` bounded to ``max_dimension``; ``None`` when unreadable."""
        ...


def sort_refs(refs: Sequence[PhotoRef], newest_first: bool) -> list[PhotoRef]:
    """Order by creation time, breaking ties on id so runs are reproducible."""

    return sorted(refs, key=lambda ref: (ref.creation_time, ref.photo_id), reverse=newest_first)


def scan_roots(roots: Sequence[Path], extensions: frozenset[str] | None = None) -> Iterator[Path]:
    """Recursively yield image files under the album roots.

    Args:
        roots: Album root directories to scan.
        extensions: Allowed file extensions, lowercased and including the leading dot.
            When omitted, :data:`DEFAULT_IMAGE_EXTENSIONS` is used.
    """

    allowed = extensions or DEFAULT_IMAGE_EXTENSIONS

    for root in roots:
        if not root.exists() or not root.is_dir():
            LOGGER.warning("scan_root_missing", extra={"root": str(root)})
            continue

        for path in root.rglob("*"):
            if path.is_file() and path.suffix.lower() in allowed:
                yield path


def read_exif_creation_time(path: Path) -> float | None:
    """Return ``DateTimeOriginal`` (or ``DateTime``) as POSIX seconds, local time."""

    try:
        with Image.open(path) as image:
            exif = image.getexif()
    except (OSError, UnidentifiedImageError):
        return None

    if not exif:
        return None

    by_name: dict[str, object] = {}
    for source in (dict(exif), dict(exif.get_ifd(_EXIF_IFD_POINTER))):
        for tag_id, value in source.items():
            by_name[ExifTags.TAGS.get(tag_id, str(tag_id))] = value

    raw = by_name.get("DateTimeOriginal") or by_name.get("DateTime")
    if not isinstance(raw, str):
        return None
    try:
        return datetime.strptime(raw.strip(), _EXIF_DATETIME_FORMAT).timestamp()
    except ValueError:
        return None


class DirectoryAssetSource:
    """Asset source over one or more album directories.

    Photo ids are resolved absolute POSIX paths. Creation time comes from EXIF
    when present, otherwise from the file's mtime; modification time is always
    the mtime. EXIF lookups are cached per path and reused while the file's mtime
    and size are unchanged.
    """

    def __init__(self, roots: Sequence[Path | str], extensions: Sequence[str] | None = None) -> None:
        self._roots = [Path(root).expanduser().resolve() for root in roots]
        self._extensions = frozenset(ext.lower() for ext in extensions) if extensions else DEFAULT_IMAGE_EXTENSIONS
        self._creation_cache: dict[str, tuple[float, int, float]] = {}
        self._cache_lock = Lock()

    def _ref_for_path(self, path: Path) -> PhotoRef | None:
        try:
            stat = path.stat()
        except OSError:
            return None

        photo_id = path.resolve().as_posix()
        with self._cache_lock:
            cached = self._creation_cache.get(photo_id)
        if cached is not None and cached[:2] == (stat.st_mtime, stat.st_size):
            creation = cached[2]
        else:
            creation = read_exif_creation_time(path) or stat.st_mtime
            with self._cache_lock:
                self._creation_cache[photo_id] = (stat.st_mtime, stat.st_size, creation)

        return PhotoRef(photo_id=photo_id, creation_time=float(creation), modification_time=float(stat.st_mtime))

    def _is_managed(self, path: Path) -> bool:
        if path.suffix.lower() not in self._extensions:
            return False
        return any(path.is_relative_to(root) for root in self._roots)

    def enumerate(self, created_after: float | None = None, newest_first: bool = True) -> list[PhotoRef]:
        refs: list[PhotoRef] = []
        for path in scan_roots(self._roots, self._extensions):
            ref = self._ref_for_path(path)
            if ref is None:
                continue
            if created_after is not None and ref.creation_time <= created_after:
                continue
            refs.append(ref)
        return sort_refs(refs, newest_first)

    def get(self, photo_id: str) -> PhotoRef | None:
        path = Path(photo_id)
        if not self._is_managed(path) or not path.is_file():
            return None
        return self._ref_for_path(path)

    def exists(self, photo_id: str) -> bool:
        path = Path(photo_id)
        return self._is_managed(path) and path.is_file()

    def load_image(self, photo_id: str, max_dimension: int) -> Image.Image | None:
        path = Path(photo_id)
        if not self._is_managed(path):
            return None
        try:
            with Image.open(path) as raw:
                raw.draft("RGB", (max_dimension, max_dimension))
                oriented = ImageOps.exif_transpose(raw)
                return downsample(oriented, max_dimension)
        except (OSError, UnidentifiedImageError, ValueError) as exc:
            LOGGER.warning("image_decode_error", extra={"photo_id": photo_id, "error": str(exc)})
            return None


__all__ = [
    "AssetSource",
    "DEFAULT_IMAGE_EXTENSIONS",
    "DirectoryAssetSource",
    "PhotoRef",
    "read_exif_creation_time",
    "scan_roots",
    "sort_refs",
]
