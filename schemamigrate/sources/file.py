"""Source driver reading migrations from a local directory given by URL."""

from __future__ import annotations

import os
from pathlib import Path
from urllib.parse import unquote, urlsplit

from .partial import DirectorySource
from .registry import register


def parse_url(url: str) -> str:
    """Return the absolute directory named by a ``file://`` URL.

    The host and path are joined, so ``file://./foo`` and ``file://foo`` are
    relative to the working directory, which is also the default.
    """
    parts = urlsplit(url)
    path = unquote(parts.netloc + parts.path)
    if not path:
        return os.getcwd()
    if not os.path.isabs(path):
        return os.path.abspath(path)
    return path


class FileSource(DirectorySource):
    """Reads migrations from a directory on the local file system."""

    def __init__(self, url: str = "", directory: str = "") -> None:
        if directory:
            super().__init__(Path(directory), ".")
        else:
            super().__init__()
        self.url = url
        self.directory = directory

    def open(self, url: str) -> "FileSource":
        return FileSource(url, parse_url(url))


register("file", FileSource())