"""
HTTP helpers — JSON lookups and file downloads over urllib.

Network problems are turned into RemoteError with an ErrorKind so
providers can report them without inspecting urllib internals. No
retries: a single attempt per run.
"""

from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any

from converge import __version__
from converge.core.models.outcome import ErrorKind

logger = logging.getLogger(__name__)

USER_AGENT = f"converge/{__version__}"
_CHUNK = 64 * 1024


class RemoteError(Exception):
    """A remote request failed."""

    def __init__(self, error_kind: ErrorKind, detail: str):
        self.error_kind = error_kind
        self.detail = detail
        super().__init__(detail)


def _request(url: str, accept: str = "*/*") -> urllib.request.Request:
    return urllib.request.Request(url, headers={"User-Agent": USER_AGENT, "Accept": accept})


def _classify(url: str, exc: Exception) -> RemoteError:
    if isinstance(exc, urllib.error.HTTPError):
        if exc.code in (404, 410):
            return RemoteError(ErrorKind.NOT_FOUND, f"{url}: HTTP {exc.code}")
        if exc.code in (401, 403):
            return RemoteError(ErrorKind.PERMISSION_DENIED, f"{url}: HTTP {exc.code}")
        return RemoteError(ErrorKind.EXTERNAL_TOOL_FAILED, f"{url}: HTTP {exc.code}")
    if isinstance(exc, urllib.error.URLError):
        if isinstance(exc.reason, (TimeoutError, socket.timeout)):
            return RemoteError(ErrorKind.TIMEOUT, f"{url}: timed out")
        return RemoteError(ErrorKind.NETWORK_UNAVAILABLE, f"{url}: {exc.reason}")
    if isinstance(exc, TimeoutError):
        return RemoteError(ErrorKind.TIMEOUT, f"{url}: timed out")
    return RemoteError(ErrorKind.NETWORK_UNAVAILABLE, f"{url}: {exc}")


def fetch_json(url: str, timeout: int = 30) -> Any:
    """GET ``url`` and decode a JSON body.

    Raises:
        RemoteError: On network failure, HTTP error or undecodable body.
    """
    logger.debug("GET %s", url)
    try:
        with urllib.request.urlopen(_request(url, "application/json"), timeout=timeout) as resp:
            raw = resp.read()
    except (urllib.error.URLError, OSError) as e:
        raise _classify(url, e) from e

    if not raw.strip():
        raise RemoteError(ErrorKind.NOT_FOUND, f"{url}: empty response")
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise RemoteError(ErrorKind.NOT_FOUND, f"{url}: invalid JSON response") from e


def download(url: str, dest: Path, timeout: int = 300) -> int:
    """Stream ``url`` into ``dest``. Returns the number of bytes written.

    Raises:
        RemoteError: On network failure, HTTP error or empty body.
    """
    logger.info("Downloading %s", url)
    written = 0
    try:
        with urllib.request.urlopen(_request(url), timeout=timeout) as resp, dest.open("wb") as f:
            for chunk in iter(lambda: resp.read(_CHUNK), b""):
                f.write(chunk)
                written += len(chunk)
    except (urllib.error.URLError, TimeoutError, ConnectionError) as e:
        raise _classify(url, e) from e
    except OSError as e:
        raise RemoteError(ErrorKind.EXTERNAL_TOOL_FAILED, f"cannot write {dest}: {e}") from e

    if written == 0:
        raise RemoteError(ErrorKind.NOT_FOUND, f"{url}: empty download")
    logger.debug("Downloaded %d bytes to %s", written, dest)
    return written
