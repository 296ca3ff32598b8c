from __future__ import annotations

import os
import pathlib
import shutil
from typing import BinaryIO

from image_pull.progress import CHUNK_SIZE

# before umask. Images can carry a leading shebang and be run as scripts
OUTPUT_MODE = 0o755


def open_output_image(path: pathlib.Path) -> BinaryIO:
    """destination file opened for writing, created or truncated, mode 0755"""
    fd = os.open(path, os.O_CREAT | os.O_TRUNC | os.O_WRONLY, OUTPUT_MODE)
    return os.fdopen(fd, "wb")


def copy_image(src: pathlib.Path, dst: pathlib.Path) -> pathlib.Path:
    """stream src into a fresh dst. Both files are closed on every path"""
    with open(src, "rb") as src_fh:
        with open_output_image(dst) as dst_fh:
            shutil.copyfileobj(src_fh, dst_fh, CHUNK_SIZE)
    return dst
