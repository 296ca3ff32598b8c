from __future__ import annotations

import json
from typing import Any, BinaryIO, Iterable

try:
    import progressbar  # pyright: ignore [reportMissingTypeStubs]
except ImportError:
    progressbar = None
try:
    import humanfriendly
except ImportError:
    humanfriendly = None

CHUNK_SIZE = 1048576


def format_size(size: int) -> str:
    if humanfriendly:
        return humanfriendly.format_size(size, binary=True)
    return f"{size} bytes"


def format_json(data: Any) -> str:
    return json.dumps(data, indent=4)


class VisualProgressBar:
    def __init__(self, total: int | None = None):
        if progressbar is None:
            widgets = []
            self.bar = None
        else:
            widgets = [
                "[",
                progressbar.Timer(),
                "] ",
                progressbar.DataSize(),
                progressbar.Bar(),
                progressbar.AdaptiveTransferSpeed(),
                " (",
                progressbar.ETA(),
                ")",
            ]
            self.bar = progressbar.ProgressBar(
                max_value=total or progressbar.UnknownLength, widgets=widgets
            )
        self.seen_so_far = 0

    def callback(self, bytes_amount: int):
        self.seen_so_far += bytes_amount
        if self.bar is not None:
            self.bar.update(  # pyright: ignore [ reportUnknownMemberType]
                self.seen_so_far
            )
        else:
            print(f"\r{format_size(self.seen_so_far)} downloaded", end="")

    def finish(self):
        if self.bar is not None:
            self.bar.finish()
        else:
            print("")


def write_stream(
    chunks: Iterable[bytes], fh: BinaryIO, total: int | None = None
) -> int:
    """write chunks into fh while displaying progress. Returns bytes written

    Progress display is cosmetic: the returned count is what was written."""
    progress = VisualProgressBar(total)
    received = 0
    for chunk in chunks:
        if chunk:
            fh.write(chunk)
            received += len(chunk)
            progress.callback(len(chunk))
    progress.finish()
    return received
