from __future__ import annotations

import logging
import pathlib

from image_pull.backends.base import Backend, Identity
from image_pull.build import DOCKER_ARCHIVE, Builder, BuildOptions, build_image
from image_pull.cache import OCI_TMP
from image_pull.registry import (
    Credentials,
    Image,
    Platform,
    RegistryAuth,
    get_image_digest,
)
from image_pull.uri import get_name, split_scheme

logger = logging.getLogger("image-pull")


class DockerBackend(Backend):
    """OCI/Docker registry, identified by the image digest for a platform

    Fetching builds an image file out of the remote layers, so the result
    is not a hash of the digest and can't be verified against it."""

    namespace = OCI_TMP
    verifiable = False

    def __init__(
        self,
        credentials: Credentials | None = None,
        no_https: bool = False,
        platform: Platform | None = None,
        tmp_dir: pathlib.Path | None = None,
        no_cache: bool = False,
        format: str = DOCKER_ARCHIVE,
        builder: Builder = build_image,
    ):
        self.credentials = credentials
        self.no_https = no_https
        self.platform = platform or Platform.auto()
        self.tmp_dir = tmp_dir
        self.no_cache = no_cache
        self.format = format
        self.builder = builder

    @property
    def options(self) -> BuildOptions:
        return BuildOptions(
            tmp_dir=self.tmp_dir,
            no_https=self.no_https,
            credentials=self.credentials,
            no_cache=self.no_cache,
            platform=self.platform,
        )

    def identify(self, reference: str) -> Identity:
        _, remainder = split_scheme(reference)
        image = Image.parse(remainder)
        auth = RegistryAuth.init(
            image, credentials=self.credentials, verify=not self.no_https
        )
        auth.authenticate()
        digest = get_image_digest(image=image, platform=self.platform, auth=auth)
        return Identity(
            identifier=digest,
            name=get_name(reference, extension="tar"),
            metadata={"image": image, "platform": self.platform},
        )

    def fetch(
        self,
        identity: Identity,
        reference: str,
        dest: pathlib.Path,
        no_cache: bool = False,
    ):
        options = self.options
        options.no_cache = options.no_cache or no_cache
        logger.info("Converting OCI blobs to image file")
        self.builder(reference, dest, self.format, options)
        logger.info(f"Build complete: {dest}")
