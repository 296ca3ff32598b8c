from __future__ import annotations

import pathlib


class PullError(Exception):
    def __init__(
        self,
        message: str,
        reference: str = "",
        identifier: str = "",
        path: pathlib.Path | None = None,
    ):
        self.reference = reference
        self.identifier = identifier
        self.path = path
        super().__init__(message)


class ResolutionError(PullError):
    """Reference could not be resolved into a content identifier"""


class FetchError(PullError):
    """Transport or build failure while fetching content"""


class IntegrityError(PullError):
    """Fetched bytes do not hash to the resolved identifier"""


class CopyError(PullError):
    """Writing to the destination failed. Cache entry remains valid"""


class BadChecksumError(PullError):
    def __init__(self, path: pathlib.Path, identifier: str, checksum: str):
        self.checksum = checksum
        super().__init__(
            f"cached file hash({checksum}) and expected hash({identifier}) "
            "does not match",
            identifier=identifier,
            path=path,
        )
