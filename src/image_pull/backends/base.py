from __future__ import annotations

import http
import logging
import pathlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import requests

from image_pull.finalize import open_output_image
from image_pull.progress import CHUNK_SIZE, format_size, write_stream
from image_pull.registry import REQUEST_TIMEOUT

logger = logging.getLogger("image-pull")


@dataclass
class Identity:
    """Resolved, immutable name of the content behind a reference"""

    identifier: str
    name: str
    size: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class Backend(ABC):
    """A remote image protocol

    `identify()` names the content behind a reference with as little network
    as possible; `fetch()` transfers the full content to a path. `no_cache`
    is set when the image cache is disabled, for backends that keep caches
    of their own."""

    #: cache namespace entries of this backend are stored under
    namespace: str = ""
    #: whether the identifier is a direct hash of the fetched bytes
    verifiable: bool = True

    @abstractmethod
    def identify(self, reference: str) -> Identity: ...

    @abstractmethod
    def fetch(
        self,
        identity: Identity,
        reference: str,
        dest: pathlib.Path,
        no_cache: bool = False,
    ): ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(namespace={self.namespace})"


def check_response(resp: requests.Response, what: str):
    if resp.status_code == http.HTTPStatus.UNAUTHORIZED:
        raise OSError(
            f"HTTP {resp.status_code}: {resp.reason} -- "
            f"Authentication required for {what}"
        )
    if resp.status_code == http.HTTPStatus.NOT_FOUND:
        raise ValueError(
            f"HTTP {resp.status_code}: {resp.reason} -- {what} not found"
        )
    if resp.status_code != http.HTTPStatus.OK:
        raise OSError(f"HTTP {resp.status_code}: {resp.reason} -- {resp.text}")


def download(
    url: str,
    dest: pathlib.Path,
    headers: dict[str, str] | None = None,
    params: dict[str, str] | None = None,
    verify: bool = True,
    size: int | None = None,
) -> int:
    """stream url into a fresh dest file. Returns number of bytes written"""
    resp = requests.get(
        url,
        headers=headers or {},
        params=params,
        stream=True,
        timeout=REQUEST_TIMEOUT,
        verify=verify,
    )
    check_response(resp, url)

    total = int(resp.headers.get("Content-Length", 0)) or size
    size_str = f" {format_size(total)}" if total else ""
    logger.debug(f"Downloading{size_str} from {url} into {dest}")
    with open_output_image(dest) as fh:
        return write_stream(resp.iter_content(chunk_size=CHUNK_SIZE), fh, total)
