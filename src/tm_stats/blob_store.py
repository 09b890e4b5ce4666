"""Content stores holding raw replay logs.

Logs live at ``{player_perspective}/game_{table_id}_{player_perspective}.json``
inside a ``games`` container. :class:`LocalBlobStore` keeps them on disk;
:class:`HttpBlobStore` talks to a REST blob container.
"""

from __future__ import annotations

import contextlib
import datetime as dt
import email.utils
import logging
import os
import re
import tempfile
import time
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple, Union

import requests

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

CONTAINER = "games"

_BLOB_NAME = re.compile(r"^(?P<scope>\d+)/game_(?P<table_id>\d+)_(?P=scope)\.json$")


class BlobNotFoundError(LookupError):
    """Raised when a requested blob does not exist."""


def blob_path(player_perspective: Union[int, str], table_id: Union[int, str]) -> str:
    return f"{player_perspective}/game_{table_id}_{player_perspective}.json"


def parse_blob_path(path: str) -> Optional[Tuple[int, int]]:
    """Return ``(table_id, player_perspective)`` for a log path, else None."""

    match = _BLOB_NAME.match(path.strip("/"))
    if match is None:
        return None
    return int(match.group("table_id")), int(match.group("scope"))


class LocalBlobStore:
    """Filesystem-backed blob container."""

    def __init__(self, root: Union[str, Path], container: str = CONTAINER) -> None:
        self.root = (Path(root) / container).resolve()

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if target != self.root and self.root not in target.parents:
            raise ValueError(f"Blob path escapes the container: {path!r}")
        return target

    def exists(self, scope: Union[int, str], blob_id: Union[int, str]) -> bool:
        return self._resolve(blob_path(scope, blob_id)).is_file()

    def get(self, scope: Union[int, str], blob_id: Union[int, str]) -> bytes:
        return self.get_path(blob_path(scope, blob_id))

    def get_path(self, path: str) -> bytes:
        try:
            return self._resolve(path).read_bytes()
        except FileNotFoundError as exc:
            raise BlobNotFoundError(path) from exc

    def last_modified(self, path: str) -> dt.datetime:
        try:
            stat = self._resolve(path).stat()
        except FileNotFoundError as exc:
            raise BlobNotFoundError(path) from exc
        return dt.datetime.fromtimestamp(stat.st_mtime, tz=dt.timezone.utc)

    def put(
        self, scope: Union[int, str], blob_id: Union[int, str], data: bytes
    ) -> str:
        """Write a blob atomically (temp file then rename) and return its path."""

        path = blob_path(scope, blob_id)
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(target.parent), prefix=".blob_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            Path(tmp_path).replace(target)
        except BaseException:
            with contextlib.suppress(OSError):
                Path(tmp_path).unlink()
            raise
        logger.info("Stored %d bytes at %s", len(data), path)
        return path

    def iter_paths(self) -> Iterator[str]:
        if not self.root.exists():
            return
        for file in sorted(self.root.rglob("*.json")):
            yield file.relative_to(self.root).as_posix()


class HttpBlobStore:
    """Blob container reached over HTTP.

    Requests are spaced by ``min_interval`` seconds and 429/503 responses are
    retried, honouring ``Retry-After`` when present.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
        *,
        container: str = CONTAINER,
        min_interval: float = 0.0,
        max_retries: int = 3,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.container = container
        self.api_key = api_key
        self._session = session or requests.Session()
        self.timeout = timeout
        self.min_interval = float(min_interval)
        self.max_retries = int(max_retries)
        self._last_request_at: Optional[float] = None

    @property
    def session(self) -> requests.Session:
        return self._session

    def close(self) -> None:
        self.session.close()

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/{self.container}/{path.lstrip('/')}"

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        if extra:
            headers.update(extra)
        return headers

    def exists(self, scope: Union[int, str], blob_id: Union[int, str]) -> bool:
        response = self._request("HEAD", blob_path(scope, blob_id))
        if response.status_code == 404:
            return False
        response.raise_for_status()
        return True

    def get(self, scope: Union[int, str], blob_id: Union[int, str]) -> bytes:
        return self.get_path(blob_path(scope, blob_id))

    def get_path(self, path: str) -> bytes:
        response = self._request("GET", path)
        if response.status_code == 404:
            raise BlobNotFoundError(path)
        response.raise_for_status()
        return response.content

    def last_modified(self, path: str) -> dt.datetime:
        response = self._request("HEAD", path)
        if response.status_code == 404:
            raise BlobNotFoundError(path)
        response.raise_for_status()
        header = response.headers.get("Last-Modified")
        if not header:
            raise ValueError(f"No Last-Modified header for blob {path}")
        parsed = email.utils.parsedate_to_datetime(header)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=dt.timezone.utc)
        return parsed

    def put(
        self, scope: Union[int, str], blob_id: Union[int, str], data: bytes
    ) -> str:
        path = blob_path(scope, blob_id)
        response = self._request(
            "PUT",
            path,
            data=data,
            headers={"Content-Type": "application/json"},
        )
        response.raise_for_status()
        logger.info("Uploaded %d bytes to %s", len(data), path)
        return path

    def iter_paths(self) -> Iterator[str]:
        raise NotImplementedError(
            "HTTP blob containers cannot be listed; pass an explicit work list."
        )

    # Internal helpers
    def _wait_for_slot(self) -> None:
        if self.min_interval <= 0:
            return
        now = time.monotonic()
        if self._last_request_at is not None:
            remaining = self.min_interval - (now - self._last_request_at)
            if remaining > 0:
                time.sleep(remaining)
                now = time.monotonic()
        self._last_request_at = now

    def _request(
        self,
        method: str,
        path: str,
        *,
        data: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> requests.Response:
        url = self.url_for(path)
        attempts = 0
        while True:
            attempts += 1
            self._wait_for_slot()
            response = self.session.request(
                method,
                url,
                data=data,
                headers=self._headers(headers),
                timeout=self.timeout,
            )
            if response.status_code not in (429, 503) or attempts > self.max_retries:
                return response
            retry_after: Optional[float] = None
            header = response.headers.get("Retry-After")
            if header is not None:
                try:
                    retry_after = float(header)
                except ValueError:
                    retry_after = None
            delay = retry_after if retry_after is not None else max(self.min_interval, 1.0)
            logger.warning(
                "%s %s returned %s; retrying in %.1fs", method, path, response.status_code, delay
            )
            time.sleep(delay)


__all__ = [
    "BlobNotFoundError",
    "CONTAINER",
    "HttpBlobStore",
    "LocalBlobStore",
    "blob_path",
    "parse_blob_path",
]
