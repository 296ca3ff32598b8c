from __future__ import annotations

from pathvalidate import sanitize_filename

LIBRARY_SCHEME = "library"
SHUB_SCHEME = "shub"
DOCKER_SCHEME = "docker"
ORAS_SCHEME = "oras"
SCHEMES = (LIBRARY_SCHEME, SHUB_SCHEME, DOCKER_SCHEME, ORAS_SCHEME)

DEFAULT_TAG = "latest"


def split_scheme(reference: str) -> tuple[str, str]:
    """(scheme, remainder) of a reference. No scheme means library

    `library://org/image:tag` -> (`library`, `org/image:tag`)"""
    if "://" not in reference:
        return LIBRARY_SCHEME, reference
    scheme, remainder = reference.split("://", 1)
    if scheme not in SCHEMES:
        raise ValueError(f"Unsupported transport type “{scheme}” in `{reference}`")
    return scheme, remainder.lstrip("/")


def split_tag(name_part: str) -> tuple[str, str, str]:
    """(name, tag, digest) of the last component of a reference"""
    try:
        name_part, digest = name_part.split("@", 1)
    except ValueError:
        digest = ""
    try:
        name_part, tag = name_part.split(":", 1)
    except ValueError:
        tag = ""
    return name_part, tag, digest


def get_name(reference: str, extension: str = "sif") -> str:
    """Filesystem-safe filename for an image reference

    `library://org/alpine:3.9` -> `alpine_3.9.sif`"""
    _, remainder = split_scheme(reference)
    name, tag, digest = split_tag(remainder.rstrip("/").rsplit("/", 1)[-1])
    if not name:
        raise ValueError(f"No image name in `{reference}`")
    if not tag:
        tag = digest.replace(":", ".") if digest else DEFAULT_TAG
    return sanitize_filename(f"{name}_{tag}.{extension}")
