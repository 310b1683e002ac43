"""
Media Storage
Key-addressable blob storage for generated images, audio, manifests and render plans.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger(__name__)


class StorageError(Exception):
    pass


class StorageManager:
    """Stores media under a local directory and hands back public URLs"""

    def __init__(self, media_dir: str = "media", public_base_url: str = "http://127.0.0.1:8008/media"):
        self.media_dir = Path(media_dir)
        self.public_base_url = public_base_url.rstrip("/")
        self.media_dir.mkdir(parents=True, exist_ok=True)
        logger.info("[storage] Storage manager initialized")

    def _resolve(self, path: str) -> Path:
        target = (self.media_dir / path.lstrip("/")).resolve()
        if self.media_dir.resolve() not in target.parents:
            raise StorageError(f"Path escapes media directory: {path}")
        return target

    def public_url(self, path: str) -> str:
        return f"{self.public_base_url}/{path.lstrip('/')}"

    def put(self, path: str, data: bytes, content_type: str) -> str:
        """Write bytes at the caller-chosen path, overwriting, and return the public URL"""
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
            target.with_name(target.name + ".meta").write_text(
                json.dumps({"content_type": content_type, "size": len(data)}),
                encoding="utf-8",
            )
        except OSError as e:
            raise StorageError(f"Failed to store {path}: {e}") from e
        logger.info(f"[storage] Stored {len(data)} bytes at {path} ({content_type})")
        return self.public_url(path)

    def put_json(self, path: str, document: Dict[str, Any]) -> str:
        return self.put(
            path,
            json.dumps(document, indent=2, default=str).encode("utf-8"),
            "application/json",
        )

    def read(self, path: str) -> bytes:
        target = self._resolve(path)
        if not target.exists():
            raise StorageError(f"No object at {path}")
        return target.read_bytes()

    def content_type(self, path: str) -> str:
        meta = self._resolve(path).with_name(Path(path).name + ".meta")
        if not meta.exists():
            return "application/octet-stream"
        return json.loads(meta.read_text(encoding="utf-8"))["content_type"]
