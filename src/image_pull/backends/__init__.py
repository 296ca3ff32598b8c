from __future__ import annotations

import pathlib

from image_pull.backends.base import Backend, Identity
from image_pull.backends.docker import DockerBackend
from image_pull.backends.library import DEFAULT_LIBRARY_URL, LibraryBackend
from image_pull.backends.oras import OrasBackend
from image_pull.backends.shub import ShubBackend
from image_pull.registry import Credentials, Platform
from image_pull.uri import (
    DOCKER_SCHEME,
    LIBRARY_SCHEME,
    ORAS_SCHEME,
    SHUB_SCHEME,
    split_scheme,
)


def get_backend(
    reference: str,
    no_https: bool = False,
    credentials: Credentials | None = None,
    library_url: str = DEFAULT_LIBRARY_URL,
    token: str = "",
    platform: Platform | None = None,
    tmp_dir: pathlib.Path | None = None,
    no_cache: bool = False,
) -> Backend:
    """Backend for the scheme of reference, configured from relevant options"""
    scheme, _ = split_scheme(reference)
    if scheme == LIBRARY_SCHEME:
        return LibraryBackend(
            url=library_url, token=token, platform=platform, no_https=no_https
        )
    if scheme == SHUB_SCHEME:
        return ShubBackend(no_https=no_https)
    if scheme == ORAS_SCHEME:
        return OrasBackend(credentials=credentials, no_https=no_https)
    if scheme == DOCKER_SCHEME:
        return DockerBackend(
            credentials=credentials,
            no_https=no_https,
            platform=platform,
            tmp_dir=tmp_dir,
            no_cache=no_cache,
        )
    raise ValueError(f"No backend for “{scheme}”")


__all__ = [
    "Backend",
    "DockerBackend",
    "Identity",
    "LibraryBackend",
    "OrasBackend",
    "ShubBackend",
    "get_backend",
]
