"""Persistent on-disk cache for model weight blobs.

Blobs are keyed by model identifier (``"esrgan-v1"``, ``"gfpgan-v1.4"``).
Each entry is a payload file plus a small JSON sidecar recording its size and
SHA-256 digest. Every public method swallows storage failures: a broken cache
behaves like an empty one, so the pipeline stays correct and merely
re-downloads.
"""

from __future__ import annotations

import hashlib
import json
import os
import re
import tempfile
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union

from restorescale.config import get_config
from restorescale.exceptions import CacheError
from restorescale.logger import setup_logger

logger = setup_logger(__name__)
config = get_config()

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class ModelCache:
    """Key-value blob store under a single directory."""

    def __init__(self, cache_dir: Optional[Union[str, Path]] = None) -> None:
        self.cache_dir = Path(cache_dir or config.MODEL_CACHE_DIR).expanduser()
        self.available = True
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning(
                "Model cache unavailable at %s, caching disabled: %s",
                self.cache_dir,
                exc,
            )
            self.available = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def get(self, key: str) -> Optional[bytes]:
        """Return the cached blob for ``key`` or ``None`` on any miss."""
        if not self.available:
            return None
        try:
            return self._read(key)
        except CacheError as exc:
            logger.warning("Discarding unreadable cache entry '%s': %s", key, exc)
            return None
        except Exception as exc:
            logger.error("Model cache get failed for '%s': %s", key, exc)
            return None

    def put(self, key: str, blob: bytes) -> None:
        """Store ``blob`` under ``key``; failures are logged and ignored."""
        if not self.available:
            return
        try:
            self._write(key, blob)
            logger.info("Cached %s (%.1f MB)", key, len(blob) / 1e6)
        except Exception as exc:
            logger.error("Model cache put failed for '%s': %s", key, exc)

    def contains(self, key: str) -> bool:
        if not self.available:
            return False
        return self._payload_path(key).exists() and self._meta_path(key).exists()

    def delete(self, key: str) -> None:
        if not self.available:
            return
        for path in (self._meta_path(key), self._payload_path(key)):
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                logger.error("Failed to delete cache file %s: %s", path, exc)

    def keys(self) -> List[str]:
        if not self.available:
            return []
        found: List[str] = []
        try:
            for meta_path in sorted(self.cache_dir.glob("*.json")):
                try:
                    with open(meta_path, "r", encoding="utf-8") as fh:
                        meta = json.load(fh)
                except (OSError, ValueError):
                    continue
                key = meta.get("key")
                if key:
                    found.append(str(key))
        except OSError as exc:
            logger.error("Failed to list model cache: %s", exc)
        return found

    def clear(self) -> None:
        for key in self.keys():
            self.delete(key)

    def size_bytes(self) -> int:
        if not self.available:
            return 0
        total = 0
        try:
            for path in self.cache_dir.glob("*.bin"):
                total += path.stat().st_size
        except OSError as exc:
            logger.error("Failed to measure model cache: %s", exc)
        return total

    # ------------------------------------------------------------------
    # Storage helpers
    # ------------------------------------------------------------------
    def _read(self, key: str) -> Optional[bytes]:
        meta_path = self._meta_path(key)
        payload_path = self._payload_path(key)
        if not meta_path.exists() or not payload_path.exists():
            return None

        try:
            with open(meta_path, "r", encoding="utf-8") as fh:
                meta = json.load(fh)
            with open(payload_path, "rb") as fh:
                blob = fh.read()
        except (OSError, ValueError) as exc:
            raise CacheError(str(exc)) from exc

        if meta.get("key") != key:
            raise CacheError(f"sidecar belongs to '{meta.get('key')}'")
        if len(blob) != int(meta.get("size", -1)):
            raise CacheError(
                f"size mismatch ({len(blob)} bytes, expected {meta.get('size')})"
            )
        if hashlib.sha256(blob).hexdigest() != meta.get("sha256"):
            raise CacheError("checksum mismatch")

        return blob

    def _write(self, key: str, blob: bytes) -> None:
        meta = {
            "key": key,
            "size": len(blob),
            "sha256": hashlib.sha256(blob).hexdigest(),
            "stored_at": datetime.now().isoformat(),
        }
        self._atomic_write(self._payload_path(key), bytes(blob))
        self._atomic_write(
            self._meta_path(key), json.dumps(meta, indent=2).encode("utf-8")
        )

    def _atomic_write(self, target: Path, content: bytes) -> None:
        fd, tmp_name = tempfile.mkstemp(
            dir=str(self.cache_dir), prefix=target.name, suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(content)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _payload_path(self, key: str) -> Path:
        return self.cache_dir / f"{self._safe_name(key)}.bin"

    def _meta_path(self, key: str) -> Path:
        return self.cache_dir / f"{self._safe_name(key)}.json"

    @staticmethod
    def _safe_name(key: str) -> str:
        return _UNSAFE_KEY_CHARS.sub("_", key)


__all__ = ["ModelCache"]
