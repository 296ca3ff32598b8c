from __future__ import annotations

import contextlib
import logging
import pathlib
import threading
from typing import Iterator

from image_pull.backends.base import Backend, Identity
from image_pull.cache import CacheHandle, file_checksum, is_content_hash
from image_pull.errors import (
    BadChecksumError,
    CopyError,
    FetchError,
    IntegrityError,
    ResolutionError,
)
from image_pull.finalize import copy_image
from image_pull.guard import InterruptGuard

logger = logging.getLogger("image-pull")

# cache entry path: (lock, number of pulls holding or waiting for it)
_entry_locks: dict[pathlib.Path, tuple[threading.Lock, int]] = {}
_entry_locks_lock = threading.Lock()


@contextlib.contextmanager
def entry_lock(path: pathlib.Path) -> Iterator[None]:
    """serialize pulls of a cache entry in this process

    Concurrent pulls of the same content fetch it only once. A lock is
    forgotten as soon as no pull uses it."""
    with _entry_locks_lock:
        lock, users = _entry_locks.get(path, (threading.Lock(), 0))
        _entry_locks[path] = (lock, users + 1)
    try:
        with lock:
            yield
    finally:
        with _entry_locks_lock:
            lock, users = _entry_locks[path]
            if users == 1:
                del _entry_locks[path]
            else:
                _entry_locks[path] = (lock, users - 1)


class Puller:
    """Pulls references from any Backend through a CacheHandle

    Sequence for a pull: identify, then (unless cache is disabled) check the
    cache, fetch into it if needed, verify, and copy the entry to destination.
    With a disabled cache, content is fetched straight into destination and a
    failed fetch may leave a truncated destination behind."""

    def __init__(self, cache: CacheHandle):
        self.cache = cache

    def pull(self, backend: Backend, reference: str, to: pathlib.Path) -> pathlib.Path:
        to = pathlib.Path(to)
        identity = self.identify(backend, reference)

        if self.cache.is_disabled():
            logger.info(f"Cache disabled, downloading {reference} into {to}")
            self.fetch(
                backend, identity, reference, to, no_cache=self.cache.is_disabled()
            )
            logger.info(f"Pull complete: {to}")
            return to

        try:
            cached = self.cache.path(
                backend.namespace, identity.identifier, identity.name
            )
        except ValueError as exc:
            raise ResolutionError(
                str(exc), reference=reference, identifier=identity.identifier
            ) from exc

        with entry_lock(cached):
            if self.check_cache(backend, identity, reference):
                logger.info("Using cached image")
            else:
                self.fetch_to_cache(backend, identity, reference)

        self.copy_from_cache(cached, to, identity, reference)
        logger.info(f"Pull complete: {to}")
        return to

    def identify(self, backend: Backend, reference: str) -> Identity:
        try:
            identity = backend.identify(reference)
        except Exception as exc:
            raise ResolutionError(
                f"failed to get checksum for {reference}: {exc}", reference=reference
            ) from exc
        logger.debug(f"{reference} resolved to {identity.identifier}")
        return identity

    def check_cache(
        self, backend: Backend, identity: Identity, reference: str
    ) -> bool:
        """whether a valid entry exists. Corrupted entries are removed"""
        args = (backend.namespace, identity.identifier, identity.name)
        try:
            return self.cache.exists(*args, verify=backend.verifiable)
        except BadChecksumError as exc:
            logger.warning(
                f"Removing cached image: {exc.path}: cache could be corrupted"
            )
            logger.debug(str(exc))
        except OSError as exc:
            raise FetchError(
                f"unable to check if {self.cache.path(*args)} exists: {exc}",
                reference=reference,
                identifier=identity.identifier,
                path=self.cache.path(*args),
            ) from exc

        try:
            self.cache.remove(*args)
        except OSError as exc:
            raise FetchError(
                f"unable to remove corrupted cache: {exc}",
                reference=reference,
                identifier=identity.identifier,
                path=self.cache.path(*args),
            ) from exc
        return False

    def fetch(
        self,
        backend: Backend,
        identity: Identity,
        reference: str,
        dest: pathlib.Path,
        no_cache: bool = False,
    ):
        try:
            backend.fetch(identity, reference, dest, no_cache=no_cache)
        except Exception as exc:
            raise FetchError(
                f"unable to download {reference}: {exc}",
                reference=reference,
                identifier=identity.identifier,
                path=dest,
            ) from exc

    def fetch_to_cache(
        self, backend: Backend, identity: Identity, reference: str
    ) -> pathlib.Path:
        """fetch into a partial file, verify it and commit it as the entry

        The partial file is removed if anything (including a SIGINT or
        SIGTERM) interrupts before commit."""
        args = (backend.namespace, identity.identifier, identity.name)
        try:
            partial = self.cache.partial_path(*args)
        except OSError as exc:
            raise FetchError(
                f"unable to prepare cache for {reference}: {exc}",
                reference=reference,
                identifier=identity.identifier,
            ) from exc

        logger.info(f"Downloading {reference}")
        with InterruptGuard(partial) as guard:
            self.fetch(backend, identity, reference, partial)
            if guard.interrupted:
                raise FetchError(
                    f"interrupted while downloading {reference}",
                    reference=reference,
                    identifier=identity.identifier,
                    path=partial,
                )

            try:
                if backend.verifiable and is_content_hash(identity.identifier):
                    self.verify(partial, identity, reference)
                return self.cache.commit(partial, *args)
            except OSError as exc:
                raise FetchError(
                    f"unable to store {reference} in cache: {exc}",
                    reference=reference,
                    identifier=identity.identifier,
                    path=partial,
                ) from exc

    def verify(self, path: pathlib.Path, identity: Identity, reference: str):
        checksum = file_checksum(path, like=identity.identifier)
        if checksum != identity.identifier:
            raise IntegrityError(
                f"downloaded file hash({checksum}) and expected "
                f"hash({identity.identifier}) does not match",
                reference=reference,
                identifier=identity.identifier,
                path=path,
            )

    def copy_from_cache(
        self,
        cached: pathlib.Path,
        to: pathlib.Path,
        identity: Identity,
        reference: str,
    ):
        try:
            copy_image(cached, to)
        except OSError as exc:
            raise CopyError(
                f"while copying image from cache: {exc}",
                reference=reference,
                identifier=identity.identifier,
                path=to,
            ) from exc
