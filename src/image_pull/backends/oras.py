from __future__ import annotations

import logging
import pathlib

from image_pull.backends.base import Backend, Identity
from image_pull.cache import ORAS, is_content_hash
from image_pull.finalize import open_output_image
from image_pull.progress import CHUNK_SIZE, format_json, write_stream
from image_pull.registry import (
    OCI_MANIFEST,
    Credentials,
    Image,
    RegistryAuth,
    get_blob,
    get_manifest,
)
from image_pull.uri import get_name, split_scheme

SIF_LAYER_MEDIA_TYPE = "application/vnd.sylabs.sif.layer.v1.sif"

logger = logging.getLogger("image-pull")


def get_sif_layer(image: Image, manifest: dict) -> dict:
    """the single image-file layer of an artifact manifest"""
    layers = [
        layer
        for layer in manifest.get("layers", [])
        if layer.get("mediaType") == SIF_LAYER_MEDIA_TYPE
    ]
    if len(layers) != 1:
        raise ValueError(
            f"Expected exactly one {SIF_LAYER_MEDIA_TYPE} layer for {image}, "
            f"found {len(layers)}"
        )
    if not layers[0].get("digest"):
        raise ValueError(f"Image layer for {image} has no digest")
    return layers[0]


class OrasBackend(Backend):
    """OCI artifact registry storing the image file as a single blob

    Identified by that blob's digest."""

    namespace = ORAS
    verifiable = True

    def __init__(self, credentials: Credentials | None = None, no_https: bool = False):
        self.credentials = credentials
        self.no_https = no_https

    def get_auth(self, image: Image) -> RegistryAuth:
        auth = RegistryAuth.init(
            image, credentials=self.credentials, verify=not self.no_https
        )
        auth.authenticate()
        return auth

    def identify(self, reference: str) -> Identity:
        _, remainder = split_scheme(reference)
        image = Image.parse(remainder)
        auth = self.get_auth(image)
        manifest = get_manifest(image, auth, accept=OCI_MANIFEST)
        logger.debug(f"manifest={format_json(manifest)}")
        layer = get_sif_layer(image, manifest)
        if not is_content_hash(layer["digest"]):
            raise ValueError(f"Unsupported digest “{layer['digest']}” for {image}")

        return Identity(
            identifier=layer["digest"],
            name=get_name(reference),
            size=layer.get("size"),
            metadata={"image": image, "auth": auth},
        )

    def fetch(
        self,
        identity: Identity,
        reference: str,
        dest: pathlib.Path,
        no_cache: bool = False,
    ):
        image = identity.metadata.get("image") or Image.parse(
            split_scheme(reference)[1]
        )
        auth = identity.metadata.get("auth") or self.get_auth(image)
        logger.info(f"Downloading image with ORAS: {image}")
        resp = get_blob(image, auth, digest=identity.identifier, stream=True)
        with open_output_image(dest) as fh:
            write_stream(
                resp.iter_content(chunk_size=CHUNK_SIZE), fh, total=identity.size
            )
