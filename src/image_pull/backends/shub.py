from __future__ import annotations

import logging
import pathlib
from dataclasses import dataclass

import requests

from image_pull.backends.base import Backend, Identity, check_response, download
from image_pull.cache import SHUB
from image_pull.registry import REQUEST_TIMEOUT
from image_pull.uri import get_name, split_scheme, split_tag

DEFAULT_SHUB_REGISTRY = "singularity-hub.org"

logger = logging.getLogger("image-pull")


@dataclass
class ShubRef:
    registry: str
    user: str
    container: str
    tag: str

    def __str__(self) -> str:
        value = f"{self.registry}/{self.user}/{self.container}"
        if self.tag:
            value += f":{self.tag}"
        return value

    @property
    def api_url(self) -> str:
        url = f"https://{self.registry}/api/container/{self.user}/{self.container}"
        if self.tag:
            url += f":{self.tag}"
        return url

    @classmethod
    def parse(cls, reference: str) -> ShubRef:
        """`shub://[registry/]user/container[:tag]`"""
        _, remainder = split_scheme(reference)
        parts = remainder.strip("/").split("/")
        if len(parts) == 3:  # noqa: PLR2004
            registry, user, name_part = parts
        elif len(parts) == 2:  # noqa: PLR2004
            registry = DEFAULT_SHUB_REGISTRY
            user, name_part = parts
        else:
            raise ValueError(
                f"Invalid shub reference `{reference}`: expected user/container"
            )
        container, tag, _ = split_tag(name_part)
        if not user or not container:
            raise ValueError(f"Invalid shub reference `{reference}`")
        return cls(registry=registry, user=user, container=container, tag=tag)


class ShubBackend(Backend):
    """Hub-style registry. Identified by the manifest's commit

    A commit is not a hash of the image bytes, so fetched content
    can't be verified against it."""

    namespace = SHUB
    verifiable = False

    def __init__(self, no_https: bool = False):
        self.no_https = no_https

    def get_manifest(self, ref: ShubRef) -> dict:
        resp = requests.get(
            ref.api_url, timeout=REQUEST_TIMEOUT, verify=not self.no_https
        )
        check_response(resp, f"shub image {ref}")
        manifest = resp.json()
        for key in ("image", "commit"):
            if not manifest.get(key):
                raise ValueError(f"Manifest for {ref} has no {key}")
        return manifest

    def identify(self, reference: str) -> Identity:
        manifest = self.get_manifest(ShubRef.parse(reference))
        return Identity(
            identifier=manifest["commit"],
            name=get_name(reference),
            size=manifest.get("size") or None,
            metadata={"manifest": manifest},
        )

    def fetch(
        self,
        identity: Identity,
        reference: str,
        dest: pathlib.Path,
        no_cache: bool = False,
    ):
        manifest = identity.metadata.get("manifest") or self.get_manifest(
            ShubRef.parse(reference)
        )
        logger.info(f"Downloading shub image {manifest.get('name', reference)}")
        download(
            manifest["image"], dest, verify=not self.no_https, size=identity.size
        )
