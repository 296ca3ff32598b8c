#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import pathlib
import sys

from image_pull.backends import (
    Backend,
    DockerBackend,
    Identity,
    LibraryBackend,
    OrasBackend,
    ShubBackend,
    get_backend,
)
from image_pull.backends.library import DEFAULT_LIBRARY_URL
from image_pull.cache import CACHEDIR_ENV, DISABLE_CACHE_ENV, CacheHandle
from image_pull.errors import (
    BadChecksumError,
    CopyError,
    FetchError,
    IntegrityError,
    PullError,
    ResolutionError,
)
from image_pull.guard import InterruptGuard
from image_pull.pull import Puller
from image_pull.registry import Credentials, Platform
from image_pull.uri import DOCKER_SCHEME, get_name, split_scheme

__version__ = "0.3.0"
logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
logger = logging.getLogger("image-pull")
logging.getLogger("urllib3").setLevel(logging.WARNING)


def get_output_path(reference: str, output: str | None) -> pathlib.Path:
    """where to write image: output, or its default name in output/cwd"""
    scheme, _ = split_scheme(reference)
    name = get_name(reference, extension="tar" if scheme == DOCKER_SCHEME else "sif")
    if not output:
        return pathlib.Path.cwd().joinpath(name)
    dest = pathlib.Path(output).expanduser().resolve()
    if dest.is_dir():
        return dest.joinpath(name)
    return dest


def pull(
    reference: str,
    to: pathlib.Path,
    cache: CacheHandle | None = None,
    **options,
) -> pathlib.Path:
    """pull reference into `to` using backend from reference's scheme

    `options` are passed to `get_backend()`"""
    cache = cache or CacheHandle.from_env()
    options.setdefault("no_cache", cache.is_disabled())
    backend = get_backend(reference, **options)
    return Puller(cache).pull(backend, reference, to)


def main():
    parser = argparse.ArgumentParser(
        prog="image-pull",
        description="Pull container images from library, hub, OCI registries "
        "and ORAS registries through a local content-addressable cache",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""Examples:
    image-pull library://alpine:3.9
    image-pull shub://vsoch/hello-world hello.sif
    image-pull --platform linux/arm64 docker://alpine:3.18 alpine.tar
    image-pull oras://ghcr.io/org/image:1.0 images/

Environment:
    {CACHEDIR_ENV}: cache root (default: ~/.image-pull/cache)
    {DISABLE_CACHE_ENV}: set to 1 to disable cache""",
    )

    parser.add_argument("-V", "--version", action="version", version=__version__)

    parser.add_argument(
        help="image to pull: library://, shub://, docker:// or oras:// reference. "
        "References without scheme are library images",
        dest="reference",
    )

    parser.add_argument(
        help="path to write image to. If it's a folder, image is written "
        "into it using its default name. Defaults to current folder",
        dest="output",
        nargs="?",
    )

    parser.add_argument(
        "-F",
        "--force",
        help="overwrite an existing output file",
        action="store_true",
        dest="force",
    )

    parser.add_argument(
        "--nohttps",
        help="do not verify TLS certificates of remote services",
        action="store_true",
        dest="no_https",
    )

    parser.add_argument(
        "--docker-username", help="registry username", dest="docker_username"
    )

    parser.add_argument(
        "--docker-password", help="registry password", dest="docker_password"
    )

    parser.add_argument(
        "--library",
        help=f"library service URL. Defaults to {DEFAULT_LIBRARY_URL}",
        default=DEFAULT_LIBRARY_URL,
        dest="library_url",
    )

    parser.add_argument(
        "--token", help="library service auth token", default="", dest="token"
    )

    parser.add_argument(
        "--tmpdir",
        help="folder to write intermediate layers into while building",
        dest="tmp_dir",
    )

    parser.add_argument(
        "--platform",
        help="Platform to download image for. "
        f"Defaults to `{Platform.auto()}` (guessed). "
        "Ex: linux/amd64, linux/arm/v6, linux/arm/v7, linux/arm64",
        default="auto",
        dest="platform",
    )

    parser.add_argument(
        "--cache-dir",
        help=f"cache root. Defaults to ${CACHEDIR_ENV} or ~/.image-pull/cache",
        dest="cache_dir",
    )

    parser.add_argument(
        "--disable-cache",
        help="do not use cache: always download into output",
        action="store_true",
        default=None,
        dest="disable_cache",
    )

    parser.add_argument(
        "--debug",
        help="Enable debug output",
        action="store_true",
        dest="debug",
    )

    args = parser.parse_args()
    if args.debug:
        logger.setLevel(logging.DEBUG)

    try:
        dest = get_output_path(args.reference, args.output)
        if dest.exists() and not args.force:
            raise FileExistsError(
                f"Image file already exists: {dest} - will not overwrite "
                "(use --force)"
            )

        credentials = None
        if args.docker_username and args.docker_password:
            credentials = Credentials(
                username=args.docker_username, password=args.docker_password
            )

        cache = CacheHandle.from_env(root=args.cache_dir, disabled=args.disable_cache)
        logger.debug(f"Using {cache}")
        pull(
            args.reference,
            to=dest,
            cache=cache,
            no_https=args.no_https,
            credentials=credentials,
            library_url=args.library_url,
            token=args.token,
            platform=Platform.parse(args.platform),
            tmp_dir=(
                pathlib.Path(args.tmp_dir).expanduser().resolve()
                if args.tmp_dir
                else None
            ),
        )
        sys.exit(0)
    except Exception as exc:
        logger.error(str(exc))
        if args.debug:
            logger.exception(exc)
        raise SystemExit(1) from exc


__all__ = [
    "Backend",
    "BadChecksumError",
    "CacheHandle",
    "CopyError",
    "Credentials",
    "DockerBackend",
    "FetchError",
    "Identity",
    "IntegrityError",
    "InterruptGuard",
    "LibraryBackend",
    "OrasBackend",
    "Platform",
    "PullError",
    "Puller",
    "ResolutionError",
    "ShubBackend",
    "get_backend",
    "get_name",
    "get_output_path",
    "main",
    "pull",
]

if __name__ == "__main__":
    main()
