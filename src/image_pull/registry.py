from __future__ import annotations

import http
import json
import logging
import platform as py_platform
import re
from dataclasses import dataclass
from typing import Any

import requests

from image_pull.progress import format_json
from image_pull.uri import DEFAULT_TAG, split_tag

REQUEST_TIMEOUT = 60

MANIFEST_LIST_V2 = "application/vnd.docker.distribution.manifest.list.v2+json"
MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"
OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
ANY_MANIFEST = f"{MANIFEST_LIST_V2}, {OCI_INDEX}, {MANIFEST_V2}, {OCI_MANIFEST}"

logger = logging.getLogger("image-pull")


class ImageNotFoundError(Exception): ...


class V2ImageNotFoundError(ImageNotFoundError):
    def __init__(
        self,
        image: Image,
        platform: Platform,
        platforms: list[Platform] | None = None,
    ):
        self.image = image
        self.platform = platform
        self.platforms = platforms or []

        super().__init__(
            f"Requested platform ({platform}) is not available "
            f"for image {image}. "
            f"Available platforms: {', '.join([str(p) for p in self.platforms])}",
        )


class V1ImageNotFoundError(ImageNotFoundError):
    def __init__(self, image: Image, platform: Platform):
        self.image = image
        self.platform = platform
        self.platforms = []

        super().__init__(
            f"Requested platform ({platform}) is not available "
            f"for v1 manifest (considered {platform.default()}) for image {image}"
        )


class LayersNotFoundError(Exception):
    def __init__(self, image: Image, platform: Platform):
        self.image = image
        self.platform = platform
        super().__init__(
            f"Layers missing for requested platform ({platform}) for image {image}."
        )


@dataclass
class Credentials:
    username: str
    password: str

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password=***)"


@dataclass
class Platform:
    architecture: str
    os: str
    variant: str

    def __repr__(self):
        value = f"{self.os}/{self.architecture}"
        if self.variant:
            value += f"/{self.variant}"
        return value

    def __eq__(self, __value: object) -> bool:
        if not isinstance(__value, Platform):
            return False
        if self.os != __value.os or self.architecture != __value.architecture:
            return False
        default_variant: str = self.default_variant(self.architecture)
        return (self.variant or default_variant) == (__value.variant or default_variant)

    @classmethod
    def parse(cls, platform_str: str) -> Platform:
        if platform_str == "auto":
            return cls.auto()

        architecture = os = variant = ""
        parts = platform_str.split("/", 2)

        if len(parts) == 3:  # noqa: PLR2004
            os, architecture, variant = parts
        elif len(parts) == 2:  # noqa: PLR2004
            os, architecture = parts
        elif len(parts) == 1:
            architecture = parts[0]

        if not os:
            os = "linux"
        if not architecture:
            architecture = "amd64"
        if architecture == "arm32":
            architecture = "arm"
        if architecture == "i386":
            architecture = "386"

        if os not in ("linux", "windows"):
            raise ValueError(f"Invalid OS “{os}” from `{platform_str}`")

        if not variant and re.match(r"[\w\d]+v\d$", architecture):
            architecture, variant = re.split(r"(v\d)$", architecture, maxsplit=1)[:-1]

        if architecture not in (
            "amd64",
            "arm",
            "arm64",
            "386",
            "mips64le",
            "ppc64le",
            "riscv64",
            "s390x",
        ):
            raise ValueError(f"Invalid arch “{architecture}” from `{platform_str}`")

        return cls(architecture=architecture, os=os, variant=variant)

    @classmethod
    def default(cls) -> Platform:
        return cls.parse("linux/amd64")

    @classmethod
    def default_variant(cls, architecture: str):
        return {"arm64": "v8", "arm": "v7"}.get(architecture, "")

    @classmethod
    def auto(cls):
        machine = py_platform.machine()
        if machine.startswith("armv7"):
            return cls.parse("linux/arm/v7")
        elif machine.startswith(("armv8", "aarch64")):
            return cls.parse("linux/arm64/v8")
        elif machine.startswith("arm"):
            return cls.parse("linux/arm/v6")
        elif re.match(r"^i(3|5|6)86", machine):
            return cls.parse("linux/i386")
        return cls.parse("linux/amd64")

    @classmethod
    def from_payload(cls, payload: dict[str, str]):
        return cls(
            architecture=payload.get("architecture", ""),
            os=payload.get("os", ""),
            variant=payload.get("variant", ""),
        )


@dataclass
class Image:
    registry: str
    repository: str
    name: str
    tag: str
    digest: str

    def __str__(self) -> str:
        value = f"{self.registry}/{self.repository}/{self.name}:{self.tag}"
        if self.digest:
            value += f"@{self.digest}"
        return value

    @property
    def fullname(self) -> str:
        return f"{self.repository}/{self.name}"

    @property
    def reg_fullname(self) -> str:
        return f"{self.registry}/{self.fullname}"

    @property
    def reference(self):
        return self.digest or self.tag

    @property
    def url(self) -> str:
        domain = (
            "hub.docker.com" if self.registry == "index.docker.io" else self.registry
        )
        prefix = "r/" if self.registry == "index.docker.io" else ""
        return f"https://{domain}/{prefix}{self.fullname}"

    @classmethod
    def parse(cls, value: str) -> Image:
        """Image from `[registry/][repository/]name[:tag][@digest]`

        A single leading component is the repository (Docker Hub), more than
        one means the first is the registry host."""
        tree, _, name_part = value.rpartition("/")
        name, tag, digest = split_tag(name_part)
        if not tag and not digest:
            tag = DEFAULT_TAG

        components = tree.split("/") if tree else []
        registry = components.pop(0) if len(components) > 1 else ""
        repository = "/".join(components)

        if not repository or repository == "_":
            repository = "library"
        if not registry or registry == "docker.io":
            registry = "index.docker.io"

        return cls(
            registry=registry,
            repository=repository,
            name=name,
            tag=tag,
            digest=digest,
        )


@dataclass
class RegistryAuth:
    registry: str
    image: str
    token: str
    url: str
    service: str
    required: bool = True
    credentials: Credentials | None = None
    verify: bool = True

    @classmethod
    def init(
        cls,
        image: Image,
        credentials: Credentials | None = None,
        verify: bool = True,
    ) -> RegistryAuth:
        # default, fallback values
        url = f"https://{image.registry}/token"
        service = ""

        resp = requests.get(
            f"https://{image.registry}/v2/", timeout=REQUEST_TIMEOUT, verify=verify
        )
        required = resp.status_code == http.HTTPStatus.UNAUTHORIZED
        if required:
            url = resp.headers["WWW-Authenticate"].split('"')[1]
            try:
                service = resp.headers["WWW-Authenticate"].split('"')[3]
            except IndexError:
                service = ""

        return cls(
            registry=image.registry,
            image=image.fullname,
            url=url,
            service=service,
            token="",
            required=required,
            credentials=credentials,
            verify=verify,
        )

    def authenticate(self):
        if not self.required:
            return
        resp = requests.get(
            self.url,
            params={
                "service": self.service,
                "scope": f"repository:{self.image}:pull",
            },
            auth=(
                (self.credentials.username, self.credentials.password)
                if self.credentials
                else None
            ),
            timeout=REQUEST_TIMEOUT,
            verify=self.verify,
        )
        if resp.status_code == http.HTTPStatus.UNAUTHORIZED:
            raise OSError(
                f"HTTP {resp.status_code}: {resp.reason} -- "
                f"Unable to authenticate against {self.registry}"
            )
        resp.raise_for_status()

        payload = resp.json()
        self.token = payload.get("token") or payload.get("access_token", "")

    @property
    def headers(self) -> dict[str, str]:
        if not self.required:
            return {}
        if not self.token:
            self.authenticate()
        return {"Authorization": f"Bearer {self.token}"}


def get_manifest(
    image: Image,
    auth: RegistryAuth,
    reference: str | None = None,
    accept: str = ANY_MANIFEST,
) -> dict[str, Any]:
    """manifest (or manifest list/index) at reference, defaulting to image's"""
    resp = requests.get(
        f"https://{image.registry}/v2/{image.fullname}/manifests/"
        f"{reference or image.reference}",
        headers=dict(**auth.headers, **{"Accept": accept}),
        timeout=REQUEST_TIMEOUT,
        verify=auth.verify,
    )
    if resp.status_code == http.HTTPStatus.UNAUTHORIZED:
        raise OSError(
            f"HTTP {resp.status_code}: {resp.reason} -- "
            "This **may** indicate an incorrect image name/registry/repo/tag.\n"
            f"Check {image.url}"
        )
    if resp.status_code == http.HTTPStatus.NOT_FOUND:
        raise ValueError(
            f"HTTP {resp.status_code}: {resp.reason} -- "
            f"Image name is probably incorrect.\nCheck {image.url}"
        )
    if resp.status_code != http.HTTPStatus.OK:
        raise OSError(f"HTTP {resp.status_code}: {resp.reason} -- {resp.text}")

    return resp.json()


def get_layers_from_v1_manifest(
    image: Image, platform: Platform, manifest: dict[str, Any]
) -> dict[str, Any]:
    """v2-shaped layers manifest out of a schema 1 manifest"""
    architecture = manifest.get("architecture", "amd64")
    os = manifest.get("os", "linux")

    if platform != Platform(architecture=architecture, os=os, variant=""):
        raise ValueError(
            f"Requested platform ({platform}) is not available "
            f"for single-platform image {image}"
        )

    return {
        "mediaType": MANIFEST_V2,
        "schemaVersion": 2,
        "config": {
            "mediaType": "application/vnd.docker.container.image.v1+json",
            "digest": json.loads(manifest["history"][0]["v1Compatibility"])["id"],
        },
        "layers": [
            {
                "mediaType": MANIFEST_V2,
                "digest": layer["blobSum"],
                "platform": {"architecture": architecture, "os": os},
            }
            for layer in manifest["fsLayers"]
        ],
    }


def select_platform_entry(
    image: Image, platform: Platform, index: dict[str, Any]
) -> dict[str, Any]:
    """entry of a manifest list (or OCI index) matching platform"""
    platforms: list[Platform] = []
    for entry in index.get("manifests", []):
        if not entry.get("platform"):
            continue
        entry_platform = Platform.from_payload(entry["platform"])
        if entry_platform == platform:
            return entry
        platforms.append(entry_platform)
    raise V2ImageNotFoundError(image=image, platform=platform, platforms=platforms)


def get_layers_manifest(image: Image, platform: Platform, auth: RegistryAuth):
    """get layers manifest for platform"""
    top = get_manifest(image, auth)
    logger.debug(f"fat_manifests={format_json(top)}")

    if top["schemaVersion"] == 1:
        return get_layers_from_v1_manifest(image=image, platform=platform, manifest=top)

    if "layers" in top:
        # image is single-platform, thus considered linux/amd64
        if platform != platform.default():
            raise V1ImageNotFoundError(image, platform)
        manifest = top
    else:
        entry = select_platform_entry(image, platform, top)
        manifest = get_manifest(
            image, auth, entry["digest"], accept=f"{MANIFEST_V2}, {OCI_MANIFEST}"
        )

    logger.debug(f"layers_manifest={format_json(manifest)}")
    if not manifest.get("layers"):
        raise LayersNotFoundError(image, platform)
    return manifest


def get_image_digest(image: Image, platform: Platform, auth: RegistryAuth) -> str:
    """Current digest for an Image

    Value of the current in-registry image for our platform.

    For v1 manifests and single-arch images, this is not the same value
    as in the registry's UI.
    Not much of a problem for us as this value is only used as a cache key:
    it changes whenever the tag is updated"""
    top = get_manifest(image, auth)

    if top["schemaVersion"] == 1:
        return get_layers_from_v1_manifest(
            image=image, platform=platform, manifest=top
        )["config"]["digest"]

    if "layers" in top:
        if platform != platform.default():
            raise V1ImageNotFoundError(image=image, platform=platform)
        return top["config"]["digest"]

    return select_platform_entry(image, platform, top)["digest"]


def get_blob(
    image: Image, auth: RegistryAuth, digest: str, stream: bool = False
) -> requests.Response:
    resp = requests.get(
        f"https://{image.registry}/v2/{image.fullname}/blobs/{digest}",
        headers=auth.headers,
        stream=stream,
        timeout=REQUEST_TIMEOUT,
        verify=auth.verify,
    )
    if resp.status_code == http.HTTPStatus.NOT_FOUND:
        raise ValueError(
            f"HTTP {resp.status_code}: {resp.reason} -- "
            f"Blob {digest} not found for {image}"
        )
    resp.raise_for_status()
    return resp
