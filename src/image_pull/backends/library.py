from __future__ import annotations

import logging
import pathlib
from dataclasses import dataclass

import requests

from image_pull.backends.base import Backend, Identity, check_response, download
from image_pull.cache import LIBRARY, is_content_hash
from image_pull.registry import REQUEST_TIMEOUT, Platform
from image_pull.uri import DEFAULT_TAG, get_name, split_scheme, split_tag

DEFAULT_LIBRARY_URL = "https://library.sylabs.io"

logger = logging.getLogger("image-pull")


@dataclass
class LibraryRef:
    entity: str
    collection: str
    container: str
    tag: str

    def __str__(self) -> str:
        return f"{self.entity}/{self.collection}/{self.container}:{self.tag}"

    @classmethod
    def parse(cls, reference: str) -> LibraryRef:
        """`library://[entity/[collection/]]container[:tag]`"""
        _, remainder = split_scheme(reference)
        parts = remainder.strip("/").split("/")
        if not parts[-1] or len(parts) > 3:  # noqa: PLR2004
            raise ValueError(f"Invalid library reference `{reference}`")

        container, tag, _ = split_tag(parts[-1])
        entity, collection = "library", "default"
        if len(parts) == 3:  # noqa: PLR2004
            entity, collection = parts[0], parts[1]
        elif len(parts) == 2:  # noqa: PLR2004
            entity = parts[0]
        if not container or not entity or not collection:
            raise ValueError(f"Invalid library reference `{reference}`")

        return cls(
            entity=entity,
            collection=collection,
            container=container,
            tag=tag or DEFAULT_TAG,
        )


class LibraryBackend(Backend):
    """Container library service. Identified by the image hash of the tag"""

    namespace = LIBRARY
    verifiable = True

    def __init__(
        self,
        url: str = DEFAULT_LIBRARY_URL,
        token: str = "",
        platform: Platform | None = None,
        no_https: bool = False,
    ):
        self.url = url.rstrip("/")
        self.token = token
        self.platform = platform or Platform.auto()
        self.no_https = no_https

    @property
    def headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    @property
    def params(self) -> dict[str, str]:
        return {"arch": self.platform.architecture}

    def identify(self, reference: str) -> Identity:
        ref = LibraryRef.parse(reference)
        resp = requests.get(
            f"{self.url}/v1/images/{ref}",
            headers=self.headers,
            params=self.params,
            timeout=REQUEST_TIMEOUT,
            verify=not self.no_https,
        )
        check_response(resp, f"library image {ref}")

        data = resp.json().get("data") or {}
        checksum = data.get("hash", "")
        if not is_content_hash(checksum):
            raise ValueError(f"Invalid hash “{checksum}” for library image {ref}")

        return Identity(
            identifier=checksum,
            name=get_name(reference),
            size=data.get("size"),
            metadata={"ref": ref},
        )

    def fetch(
        self,
        identity: Identity,
        reference: str,
        dest: pathlib.Path,
        no_cache: bool = False,
    ):
        ref = identity.metadata.get("ref") or LibraryRef.parse(reference)
        logger.info(f"Downloading library image {ref}")
        download(
            f"{self.url}/v1/imagefile/{ref}",
            dest,
            headers=self.headers,
            params=self.params,
            verify=not self.no_https,
            size=identity.size,
        )
