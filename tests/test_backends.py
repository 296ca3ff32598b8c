from __future__ import annotations

import http
import pathlib

import pytest
import requests

from image_pull.backends import (
    DockerBackend,
    LibraryBackend,
    OrasBackend,
    ShubBackend,
    get_backend,
)
from image_pull.backends.base import Identity
from image_pull.backends.library import LibraryRef
from image_pull.backends.oras import SIF_LAYER_MEDIA_TYPE, get_sif_layer
from image_pull.backends.shub import ShubRef
from image_pull.build import BuildOptions
from image_pull.cache import CacheHandle
from image_pull.errors import FetchError, IntegrityError, ResolutionError
from image_pull.pull import Puller
from image_pull.registry import Credentials, Image, ImageNotFoundError, Platform

image_bytes: bytes = b"\x00SIF image bytes\n" * 128


@pytest.mark.parametrize(
    "value, exp_str",
    [
        ("library://alpine", "library/default/alpine:latest"),
        ("alpine:3.9", "library/default/alpine:3.9"),
        ("library://org/alpine:3.9", "org/default/alpine:3.9"),
        ("library://org/tools/alpine:3.9", "org/tools/alpine:3.9"),
    ],
)
def test_library_ref(value: str, exp_str: str):
    assert str(LibraryRef.parse(value)) == exp_str


@pytest.mark.parametrize("value", ["library://", "library://a/b/c/d", "library://a//b"])
def test_library_ref_invalid(value: str):
    with pytest.raises(ValueError):
        LibraryRef.parse(value)


def test_library_identify(registry, fake_response, digest_of):
    checksum = digest_of(image_bytes, ".")
    fake = registry(
        {
            "/v1/images/org/default/alpine:3.9": fake_response(
                payload={"data": {"hash": checksum, "size": len(image_bytes)}}
            )
        }
    )
    backend = LibraryBackend(
        url="https://library.example.org/",
        token="secret",
        platform=Platform.parse("linux/arm64"),
    )

    identity = backend.identify("library://org/alpine:3.9")

    assert identity.identifier == checksum
    assert identity.name == "alpine_3.9.sif"
    assert identity.size == len(image_bytes)
    assert fake.calls[0]["url"] == (
        "https://library.example.org/v1/images/org/default/alpine:3.9"
    )
    assert fake.calls[0]["params"] == {"arch": "arm64"}
    assert fake.calls[0]["headers"] == {"Authorization": "Bearer secret"}


def test_library_identify_invalid_hash(registry, fake_response):
    registry(
        {"alpine:latest": fake_response(payload={"data": {"hash": "not-a-hash"}})}
    )
    with pytest.raises(ValueError, match="Invalid hash"):
        LibraryBackend().identify("library://alpine")


def test_library_identify_not_found(registry, fake_response):
    registry({"alpine:latest": fake_response(status_code=http.HTTPStatus.NOT_FOUND)})
    with pytest.raises(ValueError, match="not found"):
        LibraryBackend().identify("library://alpine")


def test_library_fetch(registry, fake_response, tmp_path: pathlib.Path):
    fake = registry(
        {"/v1/imagefile/library/default/alpine:latest": fake_response(content=image_bytes)}
    )
    dest = tmp_path / "alpine.sif"
    backend = LibraryBackend(no_https=True)

    backend.fetch(Identity(identifier="x", name="alpine_latest.sif"), "alpine", dest)

    assert dest.read_bytes() == image_bytes
    assert dest.stat().st_mode & 0o100
    assert fake.calls[0]["stream"] is True
    assert fake.calls[0]["verify"] is False


@pytest.mark.parametrize(
    "value, exp_str, exp_url",
    [
        (
            "shub://vsoch/hello-world",
            "singularity-hub.org/vsoch/hello-world",
            "https://singularity-hub.org/api/container/vsoch/hello-world",
        ),
        (
            "shub://hub.example.org/vsoch/hello-world:v2",
            "hub.example.org/vsoch/hello-world:v2",
            "https://hub.example.org/api/container/vsoch/hello-world:v2",
        ),
    ],
)
def test_shub_ref(value: str, exp_str: str, exp_url: str):
    ref = ShubRef.parse(value)
    assert str(ref) == exp_str
    assert ref.api_url == exp_url


def test_shub_ref_invalid():
    with pytest.raises(ValueError):
        ShubRef.parse("shub://hello-world")


def test_shub_identify_and_fetch(registry, fake_response, tmp_path: pathlib.Path):
    manifest = {
        "image": "https://storage.example.org/hello-world.sif",
        "commit": "e279432e6d3962777bb7b5e8d54f30f4347d867e",
        "version": "ed9755a0871f04db3e14971bec56a33f",
        "name": "vsoch/hello-world",
    }
    fake = registry(
        {
            "/api/container/vsoch/hello-world": fake_response(payload=manifest),
            "/hello-world.sif": fake_response(content=image_bytes),
        }
    )
    backend = ShubBackend()

    identity = backend.identify("shub://vsoch/hello-world")
    assert identity.identifier == manifest["commit"]
    assert identity.name == "hello-world_latest.sif"
    assert backend.verifiable is False

    backend.fetch(identity, "shub://vsoch/hello-world", tmp_path / "hello.sif")
    assert (tmp_path / "hello.sif").read_bytes() == image_bytes
    assert fake.calls[-1]["url"] == manifest["image"]


def test_shub_manifest_without_commit(registry, fake_response):
    registry({"hello-world": fake_response(payload={"image": "https://x/y.sif"})})
    with pytest.raises(ValueError, match="commit"):
        ShubBackend().identify("shub://vsoch/hello-world")


def oras_manifest(digest: str, media_type: str = SIF_LAYER_MEDIA_TYPE) -> dict:
    return {
        "schemaVersion": 2,
        "config": {
            "mediaType": "application/vnd.sylabs.sif.config.v1+json",
            "digest": "sha256:" + "0" * 64,
        },
        "layers": [
            {"mediaType": media_type, "digest": digest, "size": len(image_bytes)}
        ],
    }


def test_get_sif_layer(digest_of):
    image = Image.parse("ghcr.io/org/image:1.0")
    layer = get_sif_layer(image, oras_manifest(digest_of(image_bytes)))
    assert layer["digest"] == digest_of(image_bytes)

    with pytest.raises(ValueError, match="found 0"):
        get_sif_layer(image, oras_manifest(digest_of(image_bytes), "text/plain"))


def test_oras_pull(
    registry, fake_response, digest_of, cache: CacheHandle, tmp_path: pathlib.Path
):
    digest = digest_of(image_bytes)
    fake = registry(
        {
            "ghcr.io/v2/": fake_response(),
            "/v2/org/image/manifests/1.0": fake_response(payload=oras_manifest(digest)),
            f"/v2/org/image/blobs/{digest}": fake_response(content=image_bytes),
        }
    )
    backend = OrasBackend()
    dest = tmp_path / "image.sif"

    Puller(cache).pull(backend, "oras://ghcr.io/org/image:1.0", dest)

    assert dest.read_bytes() == image_bytes
    assert cache.exists(backend.namespace, digest, "image_1.0.sif")
    blob_calls = [call for call in fake.calls if "/blobs/" in call["url"]]
    assert len(blob_calls) == 1

    Puller(cache).pull(backend, "oras://ghcr.io/org/image:1.0", dest)
    assert len([call for call in fake.calls if "/blobs/" in call["url"]]) == 1


def test_oras_pull_tampered_blob(
    registry, fake_response, digest_of, cache: CacheHandle, tmp_path: pathlib.Path
):
    digest = digest_of(image_bytes)
    registry(
        {
            "ghcr.io/v2/": fake_response(),
            "/v2/org/image/manifests/1.0": fake_response(payload=oras_manifest(digest)),
            f"/v2/org/image/blobs/{digest}": fake_response(content=b"tampered"),
        }
    )
    with pytest.raises(IntegrityError):
        Puller(cache).pull(OrasBackend(), "oras://ghcr.io/org/image:1.0", tmp_path / "i")
    assert not cache.exists(OrasBackend.namespace, digest, "image_1.0.sif")


def fat_manifest() -> dict:
    return {
        "schemaVersion": 2,
        "mediaType": "application/vnd.docker.distribution.manifest.list.v2+json",
        "manifests": [
            {
                "digest": "sha256:" + "1" * 64,
                "platform": {"architecture": "amd64", "os": "linux"},
            },
            {
                "digest": "sha256:" + "2" * 64,
                "platform": {"architecture": "arm64", "os": "linux", "variant": "v8"},
            },
        ],
    }


def test_docker_identify(registry, fake_response):
    fake = registry(
        {
            "registry.example.org/v2/": fake_response(
                status_code=http.HTTPStatus.UNAUTHORIZED,
                headers={
                    "WWW-Authenticate": 'Bearer realm="https://auth.example.org/token"'
                    ',service="registry.example.org"'
                },
            ),
            "auth.example.org/token": fake_response(payload={"token": "abcd"}),
            "/v2/kiwix/tools/manifests/3.5.0": fake_response(payload=fat_manifest()),
        }
    )
    backend = DockerBackend(
        credentials=Credentials(username="user", password="pass"),
        platform=Platform.parse("linux/arm64"),
    )

    identity = backend.identify("docker://registry.example.org/kiwix/tools:3.5.0")

    assert identity.identifier == "sha256:" + "2" * 64
    assert identity.name == "tools_3.5.0.tar"
    token_call = next(call for call in fake.calls if "token" in call["url"])
    assert token_call["auth"] == ("user", "pass")
    assert token_call["params"]["scope"] == "repository:kiwix/tools:pull"
    manifest_call = fake.calls[-1]
    assert manifest_call["headers"]["Authorization"] == "Bearer abcd"


def test_docker_identify_missing_platform(registry, fake_response):
    registry(
        {
            "registry.example.org/v2/": fake_response(),
            "/manifests/3.5.0": fake_response(payload=fat_manifest()),
        }
    )
    backend = DockerBackend(platform=Platform.parse("linux/s390x"))
    with pytest.raises(ImageNotFoundError, match="not available"):
        backend.identify("docker://registry.example.org/kiwix/tools:3.5.0")


def test_docker_fetch_builds(tmp_path: pathlib.Path):
    calls: list[tuple] = []

    def builder(reference: str, dest: pathlib.Path, format: str, options: BuildOptions):
        calls.append((reference, dest, format, options))
        dest.write_bytes(b"docker archive")

    backend = DockerBackend(
        no_https=True,
        platform=Platform.parse("linux/arm64"),
        tmp_dir=tmp_path / "tmp",
        no_cache=True,
        builder=builder,
    )
    dest = tmp_path / "alpine.tar"
    identity = Identity(identifier="sha256:" + "1" * 64, name="a")
    backend.fetch(identity, "docker://alpine", dest)

    reference, build_dest, format, options = calls[0]
    assert (reference, build_dest, format) == ("docker://alpine", dest, "docker-archive")
    assert options.no_https is True
    assert options.no_cache is True
    assert options.tmp_dir == tmp_path / "tmp"
    assert options.platform == Platform.parse("linux/arm64")


def test_docker_pull_build_failure(
    registry, fake_response, cache: CacheHandle, tmp_path: pathlib.Path
):
    registry(
        {
            "index.docker.io/v2/": fake_response(),
            "/v2/library/alpine/manifests/latest": fake_response(
                payload=fat_manifest()
            ),
        }
    )

    def builder(reference, dest, format, options):
        dest.write_bytes(b"half")
        raise OSError("layer download failed")

    backend = DockerBackend(platform=Platform.parse("linux/amd64"), builder=builder)
    with pytest.raises(FetchError, match="layer download failed"):
        Puller(cache).pull(backend, "docker://alpine", tmp_path / "alpine.tar")
    entry = cache.path(backend.namespace, "sha256:" + "1" * 64, "alpine_latest.tar")
    assert not entry.parent.exists() or not any(entry.parent.iterdir())


def test_docker_pull_disabled_cache_builds_without_cache(
    registry, fake_response, disabled_cache: CacheHandle, tmp_path: pathlib.Path
):
    registry(
        {
            "index.docker.io/v2/": fake_response(),
            "/v2/library/alpine/manifests/latest": fake_response(
                payload=fat_manifest()
            ),
        }
    )
    recorded: list[bool] = []

    def builder(reference, dest, format, options):
        recorded.append(options.no_cache)
        dest.write_bytes(b"docker archive")

    backend = DockerBackend(platform=Platform.parse("linux/amd64"), builder=builder)
    dest = tmp_path / "alpine.tar"
    Puller(disabled_cache).pull(backend, "docker://alpine", dest)

    assert recorded == [True]
    assert dest.read_bytes() == b"docker archive"
    assert backend.no_cache is False


def test_oras_unsupported_digest(
    registry, fake_response, cache: CacheHandle, tmp_path: pathlib.Path
):
    registry(
        {
            "ghcr.io/v2/": fake_response(),
            "/v2/org/image/manifests/1.0": fake_response(
                payload=oras_manifest("md5:" + "a" * 32)
            ),
        }
    )
    with pytest.raises(ResolutionError, match="Unsupported digest"):
        Puller(cache).pull(
            OrasBackend(), "oras://ghcr.io/org/image:1.0", tmp_path / "a.sif"
        )
    assert not cache.root.exists()


def test_unreachable_remote(registry, cache: CacheHandle, tmp_path: pathlib.Path):
    registry({})
    with pytest.raises(ResolutionError) as exc_info:
        Puller(cache).pull(LibraryBackend(), "library://alpine", tmp_path / "a.sif")
    assert isinstance(exc_info.value.__cause__, requests.ConnectionError)


@pytest.mark.parametrize(
    "reference, expected",
    [
        ("library://alpine", LibraryBackend),
        ("alpine", LibraryBackend),
        ("shub://vsoch/hello-world", ShubBackend),
        ("oras://ghcr.io/org/image:1.0", OrasBackend),
        ("docker://alpine", DockerBackend),
    ],
)
def test_get_backend(reference: str, expected: type):
    assert isinstance(get_backend(reference, platform=Platform.default()), expected)


def test_get_backend_options():
    backend = get_backend(
        "docker://alpine",
        no_https=True,
        platform=Platform.default(),
        no_cache=True,
    )
    assert isinstance(backend, DockerBackend)
    assert backend.options.no_https is True
    assert backend.options.no_cache is True

    library = get_backend("library://alpine", library_url="https://lib.example.org", token="t")
    assert isinstance(library, LibraryBackend)
    assert library.url == "https://lib.example.org"
    assert library.headers == {"Authorization": "Bearer t"}
