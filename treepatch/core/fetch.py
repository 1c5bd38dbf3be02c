"""HTTP fetching for version manifests and delta archives."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import BinaryIO

import httpx
import structlog

from treepatch.core.catalog import Catalog
from treepatch.core.config import HTTPConfig
from treepatch.core.errors import NetworkError, PatchIOError

logger = structlog.get_logger()

STREAM_CHUNK_SIZE = 1024 * 1024


def is_remote(source: str) -> bool:
    """True for http(s) URLs, False for local paths."""
    return source.startswith(("http://", "https://"))


class ArchiveFetcher:
    """Synchronous HTTP client for manifests and delta archives.

    Transport errors (connection resets, timeouts) are retried up to
    ``config.max_retries`` times; HTTP error statuses are not.
    """

    def __init__(
        self,
        config: HTTPConfig | None = None,
        client: httpx.Client | None = None,
    ):
        """Initialize fetcher.

        Args:
            config: Optional HTTP configuration
            client: Pre-built client, mainly for tests; not closed by
                :meth:`close`
        """
        self.config = config or HTTPConfig()
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.Client:
        """Get or create sync HTTP client."""
        if self._client is None:
            self._client = httpx.Client(
                timeout=self.config.timeout,
                verify=self.config.verify_ssl,
                follow_redirects=True,
                headers={"User-Agent": self.config.user_agent},
            )
        return self._client

    def fetch_bytes(self, url: str) -> bytes:
        """Download a small document, such as the version manifest.

        Raises:
            NetworkError: If the request fails
        """
        last_error: httpx.HTTPError | None = None
        for attempt in range(self.config.max_retries + 1):
            try:
                response = self.client.get(url)
                response.raise_for_status()
                logger.debug("fetch_success", url=url, size=len(response.content), attempt=attempt + 1)
                return response.content
            except httpx.HTTPStatusError as e:
                raise NetworkError(
                    f"Download of {url} failed with HTTP {e.response.status_code}",
                    url=url,
                    status_code=e.response.status_code,
                ) from e
            except httpx.TransportError as e:
                last_error = e
                logger.debug("fetch_retry", url=url, attempt=attempt + 1, error=str(e))

        logger.error("fetch_failed", url=url, error=str(last_error))
        raise NetworkError(f"Download of {url} failed: {last_error}", url=url) from last_error

    def fetch_to_file(self, url: str, out: BinaryIO) -> int:
        """Stream a download into ``out``.

        ``out`` is truncated before every attempt so a retried download
        never leaves bytes from an earlier attempt behind.

        Returns:
            Number of bytes written

        Raises:
            NetworkError: If the request fails
            PatchIOError: If ``url`` is a local path that cannot be read
        """
        if not is_remote(url):
            return self._copy_local(Path(url.removeprefix("file://")), out)

        last_error: httpx.HTTPError | None = None
        for attempt in range(self.config.max_retries + 1):
            out.seek(0)
            out.truncate()
            written = 0
            try:
                with self.client.stream("GET", url) as response:
                    response.raise_for_status()
                    for chunk in response.iter_bytes(STREAM_CHUNK_SIZE):
                        out.write(chunk)
                        written += len(chunk)
                logger.debug("download_success", url=url, size=written, attempt=attempt + 1)
                return written
            except httpx.HTTPStatusError as e:
                raise NetworkError(
                    f"Download of {url} failed with HTTP {e.response.status_code}",
                    url=url,
                    status_code=e.response.status_code,
                ) from e
            except httpx.TransportError as e:
                last_error = e
                logger.debug("download_retry", url=url, attempt=attempt + 1, error=str(e))

        logger.error("download_failed", url=url, error=str(last_error))
        raise NetworkError(f"Download of {url} failed: {last_error}", url=url) from last_error

    def _copy_local(self, path: Path, out: BinaryIO) -> int:
        out.seek(0)
        out.truncate()
        try:
            with open(path, "rb") as src:
                shutil.copyfileobj(src, out, STREAM_CHUNK_SIZE)
        except OSError as e:
            raise PatchIOError(f"Cannot read archive {path}: {e}", path=str(path)) from e
        logger.debug("local_archive_copied", path=str(path), size=out.tell())
        return out.tell()

    def close(self) -> None:
        """Close the HTTP client if this fetcher created it."""
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None

    def __enter__(self) -> ArchiveFetcher:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()


def load_catalog(source: str, fetcher: ArchiveFetcher | None = None) -> Catalog:
    """Load the version catalog from a URL or a local manifest file.

    Args:
        source: http(s) URL or filesystem path of the manifest
        fetcher: Fetcher to reuse; a temporary one is created otherwise

    Raises:
        NetworkError: If the manifest cannot be downloaded
        ManifestFormatError: If it cannot be parsed
    """
    if not is_remote(source):
        return Catalog.from_file(Path(source.removeprefix("file://")))

    if fetcher is not None:
        return Catalog.from_yaml(fetcher.fetch_bytes(source))
    with ArchiveFetcher() as own:
        return Catalog.from_yaml(own.fetch_bytes(source))
