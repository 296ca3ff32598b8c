from __future__ import annotations

import copy
import gzip
import hashlib
import http
import json
import logging
import os
import pathlib
import shutil
import tarfile
import tempfile
from dataclasses import dataclass, field
from typing import Any, Protocol

import requests

from image_pull.cache import file_checksum, is_content_hash
from image_pull.finalize import open_output_image
from image_pull.progress import CHUNK_SIZE, format_json, format_size, write_stream
from image_pull.registry import (
    REQUEST_TIMEOUT,
    Credentials,
    Image,
    Platform,
    RegistryAuth,
    get_blob,
    get_layers_manifest,
)
from image_pull.uri import split_scheme

DOCKER_ARCHIVE = "docker-archive"
FORMATS = (DOCKER_ARCHIVE,)

GZIP_MAGIC = b"\x1f\x8b"

logger = logging.getLogger("image-pull")


@dataclass
class BuildOptions:
    tmp_dir: pathlib.Path | None = None
    no_https: bool = False
    credentials: Credentials | None = None
    no_cache: bool = False
    platform: Platform = field(default_factory=Platform.auto)


class Builder(Protocol):
    def __call__(
        self, reference: str, dest: pathlib.Path, format: str, options: BuildOptions
    ) -> None: ...


def make_layer_id(parent_id: str, layer: dict[str, Any]) -> str:
    """Fake layer ID. Don't know how Docker generates it"""
    return hashlib.sha256(
        (parent_id + "\n" + layer["digest"] + "\n").encode("utf-8")
    ).hexdigest()


def get_layer_dir(image_dir: pathlib.Path, layer_id: str) -> pathlib.Path:
    layer_dir = image_dir / layer_id
    layer_dir.mkdir(parents=True, exist_ok=True)
    return layer_dir


def download_layer_blob(
    image: Image,
    layer: dict[str, Any],
    layer_dir: pathlib.Path,
    auth: RegistryAuth,
) -> pathlib.Path:
    layer_digest = layer["digest"]

    size_str = f" {format_size(layer['size'])}" if layer.get("size") else ""
    logger.info(f"> [{layer_digest[7:19]}] Downloading{size_str}…")

    try:
        resp = get_blob(image=image, auth=auth, digest=layer_digest, stream=True)
    except (ValueError, requests.HTTPError):
        # When the layer is located at a custom URL
        if not layer.get("urls"):
            raise
        resp = requests.get(
            layer["urls"][0],
            headers=auth.headers,
            stream=True,
            timeout=REQUEST_TIMEOUT,
            verify=auth.verify,
        )
        if resp.status_code != http.HTTPStatus.OK:
            raise OSError(
                f"Cannot download layer {layer_digest[7:19]} "
                f"[HTTP {resp.status_code}]"
            )

    blob = layer_dir / "layer_blob"
    with open(blob, "wb") as fh:
        write_stream(
            resp.iter_content(chunk_size=CHUNK_SIZE),
            fh,
            total=int(resp.headers.get("Content-Length", 0)) or None,
        )

    if is_content_hash(layer_digest):
        checksum = file_checksum(blob, like=layer_digest)
        if checksum != layer_digest:
            raise OSError(
                f"Layer {layer_digest[7:19]} is corrupted: received {checksum}"
            )

    return blob


def extract_layer(layer_digest: str, layer_dir: pathlib.Path) -> pathlib.Path:
    logger.info(f"> [{layer_digest[7:19]}] Extracting…")
    blob = layer_dir / "layer_blob"
    layer_ark = layer_dir / "layer.tar"
    with open(blob, "rb") as fh:
        compressed = fh.read(2) == GZIP_MAGIC
    if compressed:
        with open(layer_ark, "wb") as fh:
            with gzip.open(blob, "rb") as gzfh:
                shutil.copyfileobj(gzfh, fh, CHUNK_SIZE)
        blob.unlink()
    else:
        blob.rename(layer_ark)

    return layer_ark


def write_layer_metadata(
    layer_dir: pathlib.Path,
    layer_id: str,
    parent_id: str,
    is_last: bool,
    config: dict[str, Any],
) -> str:
    with open(layer_dir / "VERSION", "w") as fh:
        fh.write("1.0")

    with open(layer_dir / "json", "w") as fh:
        # last layer = image config minus history and rootfs
        if is_last:
            layer_manifest = copy.copy(config)
            for key in (
                "history",
                "rootfs",
                "rootfS",
            ):  # Microsoft loves case insensitiveness
                if key in layer_manifest:
                    del layer_manifest[key]
        else:  # other layers json are empty
            layer_manifest = {
                "created": "1970-01-01T00:00:00Z",
                "container_config": {
                    "Hostname": "",
                    "Domainname": "",
                    "User": "",
                    "AttachStdin": False,
                    "AttachStdout": False,
                    "AttachStderr": False,
                    "Tty": False,
                    "OpenStdin": False,
                    "StdinOnce": False,
                    "Env": None,
                    "Cmd": None,
                    "Image": "",
                    "Volumes": None,
                    "WorkingDir": "",
                    "Entrypoint": None,
                    "OnBuild": None,
                    "Labels": None,
                },
            }
        layer_manifest["id"] = layer_id
        if parent_id:
            layer_manifest["parent"] = parent_id
        fh.write(format_json(layer_manifest))
        return layer_id


def bundle_image(
    image: Image,
    image_dir: pathlib.Path,
    target: pathlib.Path,
    manifest: list[dict[str, Any]],
    config: bytes,
    latest_layer_id: str,
):
    """write metadata into image_dir and tar it into target, all or nothing"""
    logger.info("Adding Image metadata…")
    with open(image_dir / manifest[0]["Config"], "wb") as fh:
        fh.write(config)

    with open(image_dir / "manifest.json", "w") as fh:
        fh.write(format_json(manifest))

    with open(image_dir / "repositories", "w") as fh:
        fh.write(
            format_json(
                {
                    image.reg_fullname: {
                        image.tag or image.digest.replace(":", "-"): latest_layer_id
                    }
                }
            )
        )

    logger.info(f"Creating archive at {target}")
    partial = target.with_name(f".{target.name}.build")
    try:
        with open_output_image(partial) as fh:
            with tarfile.open(fileobj=fh, mode="w") as tar:
                tar.add(image_dir, arcname=os.path.sep)
        os.replace(partial, target)
    finally:
        partial.unlink(missing_ok=True)


def export_layers(
    image: Image,
    image_dir: pathlib.Path,
    target: pathlib.Path,
    auth: RegistryAuth,
    manifest: dict[str, Any],
):
    """create docker archive from layers manifest"""
    total_size = sum([layer.get("size", 0) for layer in manifest["layers"]])
    size_str = f" ({format_size(total_size)})" if total_size else ""
    logger.info(
        f"Exporting {len(manifest['layers'])} layers{size_str} into {image_dir}"
    )

    digest = manifest["config"]["digest"]
    logger.debug(f"{digest=}")
    config = get_blob(image=image, auth=auth, digest=digest).content
    config_payload = json.loads(config)

    new_manifest: list[dict[str, Any]] = [
        {
            "Config": f"{digest.split(':', 1)[-1]}.json",
            "RepoTags": [f"{image.reg_fullname}:{image.tag}"] if image.tag else [],
            "Layers": [],
        }
    ]

    parent_id = ""
    layer_id = "unknown"
    for index, layer in enumerate(manifest["layers"]):
        layer_id = make_layer_id(parent_id=parent_id, layer=layer)
        layer_dir = get_layer_dir(image_dir=image_dir, layer_id=layer_id)
        download_layer_blob(image=image, layer=layer, layer_dir=layer_dir, auth=auth)
        layer_ark = extract_layer(layer_dir=layer_dir, layer_digest=layer["digest"])
        new_manifest[0]["Layers"].append(str(layer_ark.relative_to(image_dir)))
        parent_id = write_layer_metadata(
            layer_dir=layer_dir,
            layer_id=layer_id,
            parent_id=parent_id,
            is_last=index == len(manifest["layers"]) - 1,
            config=config_payload,
        )
    bundle_image(
        image=image,
        image_dir=image_dir,
        target=target,
        config=config,
        manifest=new_manifest,
        latest_layer_id=layer_id,
    )
    logger.info(f"Docker image exported: {target}")


def build_image(
    reference: str, dest: pathlib.Path, format: str, options: BuildOptions
) -> None:
    """assemble image at `reference` from its registry layers into `dest`

    Params:
        `reference`: a `docker://` reference
        `format`: output format. Only `docker-archive` is supported
        `options`: `tmp_dir` is where intermediate layers are written to
         (in a temp dir) while fetching."""
    if format not in FORMATS:
        raise ValueError(
            f"Unsupported build format “{format}”. Use one of {', '.join(FORMATS)}"
        )

    _, remainder = split_scheme(reference)
    image = Image.parse(remainder)
    logger.info(f"Starting {image} ({options.platform}) build into {dest}")
    if options.no_cache:
        logger.debug("Cache disabled for build")

    if options.tmp_dir:
        options.tmp_dir.mkdir(parents=True, exist_ok=True)

    auth = RegistryAuth.init(
        image, credentials=options.credentials, verify=not options.no_https
    )
    auth.authenticate()
    manifest = get_layers_manifest(image=image, platform=options.platform, auth=auth)

    with tempfile.TemporaryDirectory(
        suffix=".tmp", prefix="build-", dir=options.tmp_dir
    ) as image_dir:
        export_layers(
            image=image,
            image_dir=pathlib.Path(image_dir),
            target=dest,
            auth=auth,
            manifest=manifest,
        )
