"""HTTP download of model weights."""

from __future__ import annotations

from typing import Callable, Optional

import requests

from restorescale.config import get_config
from restorescale.datatypes import ModelDescriptor
from restorescale.exceptions import NetworkFetchError
from restorescale.logger import setup_logger

logger = setup_logger(__name__)
config = get_config()

ProgressCallback = Callable[[int, Optional[int]], None]


class ModelFetcher:
    """Streams a model blob into memory. No automatic retries."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        chunk_size: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.timeout = float(timeout or config.MODEL_DOWNLOAD_TIMEOUT)
        self.chunk_size = int(chunk_size or config.MODEL_DOWNLOAD_CHUNK_SIZE)
        self._session = session or requests.Session()

    def fetch(
        self, descriptor: ModelDescriptor, progress: Optional[ProgressCallback] = None
    ) -> bytes:
        url = descriptor.source_url
        logger.info("Downloading %s from %s", descriptor.display_name, url)

        try:
            with self._session.get(url, stream=True, timeout=self.timeout) as resp:
                if not resp.ok:
                    raise NetworkFetchError(
                        f"Failed to fetch {descriptor.display_name}: "
                        f"{resp.status_code} {resp.reason}",
                        url=url,
                        status_code=resp.status_code,
                    )

                total = resp.headers.get("Content-Length")
                # iter_content decodes gzip, so the header only counts raw bodies
                encoded = resp.headers.get("Content-Encoding")
                expected = (
                    int(total) if total and total.isdigit() and not encoded else None
                )
                payload = bytearray()
                for chunk in resp.iter_content(chunk_size=self.chunk_size):
                    if chunk:
                        payload.extend(chunk)
                        if progress is not None:
                            progress(len(payload), expected)
        except NetworkFetchError:
            raise
        except requests.Timeout as exc:
            raise NetworkFetchError(
                f"Timed out fetching {descriptor.display_name}: {exc}", url=url
            ) from exc
        except requests.RequestException as exc:
            raise NetworkFetchError(
                f"Failed to fetch {descriptor.display_name}: {exc}", url=url
            ) from exc

        if not payload:
            raise NetworkFetchError(
                f"Failed to fetch {descriptor.display_name}: empty response", url=url
            )
        if expected is not None and len(payload) != expected:
            raise NetworkFetchError(
                f"Failed to fetch {descriptor.display_name}: received "
                f"{len(payload)} of {expected} bytes",
                url=url,
            )

        logger.info(
            "Downloaded %s (%.1f MB)", descriptor.display_name, len(payload) / 1e6
        )
        return bytes(payload)


__all__ = ["ModelFetcher", "ProgressCallback"]
