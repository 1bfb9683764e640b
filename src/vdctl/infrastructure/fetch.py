"""ToolFetcher — download the resolution tool once, reuse across sessions.

Cache key is the configured SHA-256 checksum when one is given (a cached
file with a different digest is re-downloaded), otherwise the filename.
Downloads stream into a temp file and are moved into place only after the
checksum verifies, so a partial download is never mistaken for the tool.
"""

from __future__ import annotations

import hashlib
import logging
import os
import stat
import tempfile
from pathlib import Path
from urllib.parse import urlparse

import httpx

from vdctl.domain.errors import FetchError
from vdctl.infrastructure.filesystem import sha256_file
from vdctl.infrastructure.retry import RetryPolicy

logger = logging.getLogger(__name__)


def filename_from_url(url: str) -> str:
    """Last path segment of *url* (``tool.exe`` for ``https://h/x/tool.exe``)."""
    try:
        name = Path(urlparse(url).path).name
    except ValueError as exc:
        msg = f"Invalid tool URL {url!r}: {exc}"
        raise FetchError(msg, url=url) from exc
    if not name:
        msg = f"Cannot derive a filename from URL {url!r}"
        raise FetchError(msg, url=url)
    return name


class ToolFetcher:
    """Fetch-with-retry collaborator for the auxiliary resolution tool."""

    def __init__(
        self,
        cache_dir: Path,
        url: str,
        *,
        filename: str | None = None,
        checksum: str | None = None,
        policy: RetryPolicy | None = None,
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._cache_dir = cache_dir
        self._url = url
        self._filename = filename or filename_from_url(url)
        self._checksum = checksum.lower() if checksum else None
        self._policy = policy or RetryPolicy(max_attempts=3, delay=2.0)
        self._timeout = timeout
        self._client = client

    @property
    def url(self) -> str:
        return self._url

    @property
    def path(self) -> Path:
        return self._cache_dir / self._filename

    def cached_path(self) -> Path | None:
        """The cached tool if present and valid, without touching the network."""
        path = self.path
        if not path.is_file():
            return None
        if self._checksum is not None and sha256_file(path) != self._checksum:
            logger.info("Cached tool checksum mismatch, ignoring: %s", path)
            return None
        return path

    def ensure(self) -> Path:
        """Return a local path to the tool, downloading it if needed.

        Raises:
            FetchError: Every attempt failed.
        """
        cached = self.cached_path()
        if cached is not None:
            logger.debug("Tool cache hit: %s", cached)
            return cached

        try:
            return self._policy.call(
                self._download_once,
                retry_on=(httpx.HTTPError, FetchError, OSError),
                label=f"fetch {self._url}",
            )
        except (httpx.HTTPError, httpx.InvalidURL, FetchError, OSError) as exc:
            msg = f"Failed to fetch {self._url} after {self._policy.max_attempts} attempts: {exc}"
            raise FetchError(msg, url=self._url, attempts=self._policy.max_attempts) from exc

    def _download_once(self) -> Path:
        self._cache_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._filename}.", suffix=".part", dir=self._cache_dir
        )
        tmp = Path(tmp_name)
        digest = hashlib.sha256()
        try:
            with os.fdopen(fd, "wb") as fh:
                client = self._client or httpx.Client(timeout=self._timeout, follow_redirects=True)
                try:
                    with client.stream("GET", self._url) as response:
                        response.raise_for_status()
                        for chunk in response.iter_bytes():
                            fh.write(chunk)
                            digest.update(chunk)
                finally:
                    if self._client is None:
                        client.close()

            actual = digest.hexdigest()
            if self._checksum is not None and actual != self._checksum:
                msg = f"Checksum mismatch for {self._url}: expected {self._checksum}, got {actual}"
                raise FetchError(msg, url=self._url, expected=self._checksum, actual=actual)

            tmp.chmod(tmp.stat().st_mode | stat.S_IXUSR)
            os.replace(tmp, self.path)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

        logger.info("Fetched tool %s -> %s", self._url, self.path)
        return self.path
