from __future__ import annotations

import hashlib
import logging
import os
import pathlib
import re
import shutil
import tempfile

from image_pull.errors import BadChecksumError

CACHEDIR_ENV = "IMAGE_PULL_CACHEDIR"
DISABLE_CACHE_ENV = "IMAGE_PULL_DISABLE_CACHE"
DEFAULT_CACHEDIR = pathlib.Path("~/.image-pull/cache")

LIBRARY = "library"
SHUB = "shub"
OCI_TMP = "oci-tmp"
ORAS = "oras"
NAMESPACES = (LIBRARY, SHUB, OCI_TMP, ORAS)

HASH_CHUNK_SIZE = 1048576

logger = logging.getLogger("image-pull")

# `<algo>:<hex>` (registries) or `<algo>.<hex>` (library service)
content_hash_re = re.compile(
    r"^(?P<algo>sha256|sha512)(?P<sep>[:.])(?P<hex>[0-9a-f]*)$"
)
# hex length of each supported digest algorithm
HASH_LENGTHS = {"sha256": 64, "sha512": 128}


def is_content_hash(identifier: str) -> bool:
    """whether identifier is a direct hash of the entry's bytes"""
    match = content_hash_re.match(identifier)
    return bool(match) and len(match.group("hex")) == HASH_LENGTHS[match.group("algo")]


def file_checksum(path: pathlib.Path, like: str = "sha256:") -> str:
    """checksum of file at path, spelled like `like`

    `like` is a digest (or its `<algo>:`/`<algo>.` prefix) giving both the
    algorithm and the separator. Reads the file in chunks so arbitrarily large
    images can be hashed."""
    match = content_hash_re.match(like)
    if not match:
        raise ValueError(f"Unsupported digest “{like}”")
    digest = hashlib.new(match.group("algo"))
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return f"{match.group('algo')}{match.group('sep')}{digest.hexdigest()}"


def is_truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


class CacheHandle:
    """Content-addressable image cache rooted at a directory

    Entries live at `<root>/<namespace>/<identifier>/<name>`. A file only
    ever lands at an entry path through `commit()`, after its content has
    been fully written (and verified, where the identifier is a content hash).
    """

    def __init__(self, root: pathlib.Path | str, disabled: bool = False):
        self.root = pathlib.Path(root).expanduser().resolve()
        self.disabled = disabled

    def __repr__(self) -> str:
        return f"CacheHandle(root={self.root}, disabled={self.disabled})"

    @classmethod
    def from_env(
        cls, root: pathlib.Path | str | None = None, disabled: bool | None = None
    ) -> CacheHandle:
        """CacheHandle from arguments, falling back to environment then defaults"""
        if root is None:
            root = os.getenv(CACHEDIR_ENV) or DEFAULT_CACHEDIR
        if disabled is None:
            disabled = is_truthy(os.getenv(DISABLE_CACHE_ENV))
        return cls(root=root, disabled=disabled)

    def is_disabled(self) -> bool:
        return self.disabled

    def path(self, namespace: str, identifier: str, name: str) -> pathlib.Path:
        """path of an entry. Never touches the filesystem"""
        if namespace not in NAMESPACES:
            raise ValueError(f"Unknown cache namespace “{namespace}”")
        if not identifier or "/" in identifier or identifier in (".", ".."):
            raise ValueError(f"Invalid cache identifier “{identifier}”")
        if not name or "/" in name or name.startswith("."):
            raise ValueError(f"Invalid cache entry name “{name}”")
        return self.root / namespace / identifier / name

    def exists(
        self, namespace: str, identifier: str, name: str, verify: bool = True
    ) -> bool:
        """whether a complete entry is present

        When `verify` is set and identifier is a content hash, the entry is
        re-hashed and a mismatch raises BadChecksumError instead of returning
        False, so callers can purge it."""
        path = self.path(namespace, identifier, name)
        if not path.is_file():
            return False
        if verify and is_content_hash(identifier):
            checksum = file_checksum(path, like=identifier)
            if checksum != identifier:
                raise BadChecksumError(
                    path=path, identifier=identifier, checksum=checksum
                )
        return True

    def partial_path(
        self, namespace: str, identifier: str, name: str
    ) -> pathlib.Path:
        """new, unique, hidden sibling of an entry path to fetch into"""
        target = self.path(namespace, identifier, name)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, partial = tempfile.mkstemp(
            prefix=f".{name}.", suffix=".part", dir=target.parent
        )
        os.close(fd)
        return pathlib.Path(partial)

    def commit(
        self, partial: pathlib.Path, namespace: str, identifier: str, name: str
    ) -> pathlib.Path:
        """atomically turn a fully written partial file into the entry"""
        target = self.path(namespace, identifier, name)
        os.replace(partial, target)
        logger.debug(f"Cached {target}")
        return target

    def remove(self, namespace: str, identifier: str, name: str):
        path = self.path(namespace, identifier, name)
        if path.is_dir():
            shutil.rmtree(path)
        else:
            path.unlink(missing_ok=True)
