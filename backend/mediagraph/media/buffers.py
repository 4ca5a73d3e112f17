"""Transient media buffers: object references, scratch dirs and data URLs."""
import base64
import logging
import mimetypes
import shutil
import tempfile
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import httpx

from ..engine.errors import MediaProcessingError

logger = logging.getLogger(__name__)

REF_PREFIX = "blob:mediagraph/"

_EXTRA_EXTENSIONS = {
    "video/mp4": ".mp4",
    "video/webm": ".webm",
    "video/quicktime": ".mov",
    "audio/mpeg": ".mp3",
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
    "model/gltf-binary": ".glb",
}


def extension_for(mime: str | None, default: str = ".bin") -> str:
    if not mime:
        return default
    return _EXTRA_EXTENSIONS.get(mime) or mimetypes.guess_extension(mime) or default


def mime_for(path: Path, default: str = "application/octet-stream") -> str:
    return mimetypes.guess_type(path.name)[0] or default


def is_object_ref(value: str | None) -> bool:
    return bool(value) and value.startswith("blob:")


def encode_data_url(payload: bytes, mime: str) -> str:
    return f"data:{mime};base64,{base64.b64encode(payload).decode('ascii')}"


def decode_data_url(url: str) -> tuple[str, bytes]:
    """Split a data URL into (mime, bytes)."""
    if not url.startswith("data:") or "," not in url:
        raise MediaProcessingError("Malformed data URL")
    header, body = url[5:].split(",", 1)
    parts = header.split(";")
    mime = parts[0] or "application/octet-stream"
    if "base64" in parts[1:]:
        try:
            return mime, base64.b64decode(body)
        except ValueError as exc:
            raise MediaProcessingError("Malformed data URL payload") from exc
    return mime, body.encode()


class TransientStore:
    """Process-local store behind `blob:` references.

    Each reference owns one file under `root/refs`; release() deletes it.
    Releasing is idempotent and reports whether anything was freed.
    """

    def __init__(self, root: Path, http_client: httpx.AsyncClient | None = None):
        self.root = Path(root)
        self._refs_dir = self.root / "refs"
        self._scratch_dir = self.root / "scratch"
        self._refs_dir.mkdir(parents=True, exist_ok=True)
        self._scratch_dir.mkdir(parents=True, exist_ok=True)
        self._refs: dict[str, Path] = {}
        self._lock = threading.Lock()
        self._http = http_client

    @property
    def active_refs(self) -> list[str]:
        with self._lock:
            return list(self._refs)

    def create_ref(self, path: Path, mime: str | None = None) -> str:
        """Move `path` into the store and return a new reference to it."""
        ref_id = uuid.uuid4().hex
        suffix = path.suffix or extension_for(mime)
        dest = self._refs_dir / f"{ref_id}{suffix}"
        shutil.move(str(path), dest)
        ref = f"{REF_PREFIX}{ref_id}"
        with self._lock:
            self._refs[ref] = dest
        return ref

    def resolve(self, ref: str) -> Path | None:
        with self._lock:
            return self._refs.get(ref)

    def release(self, ref: str | None) -> bool:
        if not is_object_ref(ref):
            return False
        with self._lock:
            path = self._refs.pop(ref, None)
        if path is None:
            return False
        path.unlink(missing_ok=True)
        return True

    @contextmanager
    def scratch(self) -> Iterator[Path]:
        workdir = Path(tempfile.mkdtemp(prefix="run-", dir=self._scratch_dir))
        try:
            yield workdir
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    async def fetch(self, source: str, workdir: Path, stem: str) -> Path:
        """Materialize a media source (data URL, reference, URL or path) as a file.

        Plain paths must point inside the store root.
        """
        if source.startswith("data:"):
            mime, payload = decode_data_url(source)
            dest = workdir / f"{stem}{extension_for(mime)}"
            dest.write_bytes(payload)
            return dest

        if is_object_ref(source):
            path = self.resolve(source)
            if path is None or not path.exists():
                raise MediaProcessingError(f"Media reference is no longer available: {source}")
            dest = workdir / f"{stem}{path.suffix}"
            shutil.copyfile(path, dest)
            return dest

        if source.startswith(("http://", "https://")):
            return await self._download(source, workdir, stem)

        # local files are only served from inside the store's own root
        path = Path(source).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise MediaProcessingError(f"Media source is outside the work directory: {source}")
        if not path.exists():
            raise MediaProcessingError(f"Media source not found: {source}")
        return path

    async def _download(self, url: str, workdir: Path, stem: str) -> Path:
        client = self._http or httpx.AsyncClient(timeout=120.0, follow_redirects=True)
        try:
            async with client.stream("GET", url) as resp:
                if resp.status_code >= 400:
                    raise MediaProcessingError(f"Failed to fetch media: HTTP {resp.status_code}")
                mime = resp.headers.get("content-type", "").split(";")[0] or None
                suffix = Path(httpx.URL(url).path).suffix or extension_for(mime)
                dest = workdir / f"{stem}{suffix}"
                with open(dest, "wb") as f:
                    async for chunk in resp.aiter_bytes():
                        f.write(chunk)
        except httpx.HTTPError as exc:
            raise MediaProcessingError(f"Failed to fetch media: {exc}") from exc
        finally:
            if self._http is None:
                await client.aclose()
        logger.debug("Fetched %s -> %s", url, dest)
        return dest

    def publish(self, path: Path, inline_limit_bytes: int, mime: str | None = None) -> str:
        """Expose a produced file: inline data URL when small, reference otherwise."""
        mime = mime or mime_for(path)
        if path.stat().st_size > inline_limit_bytes:
            return self.create_ref(path, mime)
        return encode_data_url(path.read_bytes(), mime)
