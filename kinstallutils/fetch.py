"""Opening chart archives and other resources by file path or http(s) address."""

from __future__ import annotations

import os
import urllib.error
import urllib.request
from typing import BinaryIO, Optional


class ResourceFetchError(Exception):
    """The resource could not be fetched."""


class ResourceFetcher:
    """Opens the resource behind a URI: an http(s) address or a file path."""

    def __init__(self, timeout: Optional[float] = None) -> None:
        self._timeout = timeout

    def get_resource(self, uri: str) -> BinaryIO:
        """An open binary stream over the resource; the caller closes it."""
        if uri.startswith(("http://", "https://")):
            return self._get_http(uri)
        path = os.path.abspath(uri)
        try:
            return open(path, "rb")
        except OSError as exc:
            raise ResourceFetchError(f"opening file {path}: {exc}") from exc

    def _get_http(self, uri: str) -> BinaryIO:
        try:
            if self._timeout is None:
                response = urllib.request.urlopen(uri)
            else:
                response = urllib.request.urlopen(uri, timeout=self._timeout)
        except urllib.error.HTTPError as exc:
            exc.close()
            raise ResourceFetchError(
                f"http GET returned status {exc.code} for resource {uri}"
            ) from exc
        except (urllib.error.URLError, OSError) as exc:
            raise ResourceFetchError(f"http GET failed for resource {uri}: {exc}") from exc
        if response.status != 200:
            status = response.status
            response.close()
            raise ResourceFetchError(f"http GET returned status {status} for resource {uri}")
        return response