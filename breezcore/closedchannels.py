"""Fetching and reading the published lists of closed channel ids."""

from __future__ import annotations

import os
import re
import shutil
import struct
import tempfile
import urllib.error
import urllib.request
from contextlib import suppress
from http import HTTPStatus
from typing import Callable, Optional, Union

FIRST_FILE_NUMBER = 5655
DELETED_SUFFIX = ".deleted"

_UINT64_MAX = 2**64 - 1
_DIGITS = re.compile(r"[0-9]+")

PathLike = Union[str, os.PathLike]


def _parse_uint(name: str) -> Optional[int]:
    if not _DIGITS.fullmatch(name):
        return None
    number = int(name)
    return number if number <= _UINT64_MAX else None


def _plain_files(dirname: PathLike):
    with os.scandir(dirname) as entries:
        return [entry.name for entry in entries if not entry.is_dir()]


def file_to_import(more_than: int, dirname: PathLike) -> int:
    """Return the smallest numbered file above more_than not yet imported, or 0."""
    candidates = [
        number
        for name in _plain_files(dirname)
        if not name.endswith(DELETED_SUFFIX)
        and (number := _parse_uint(name)) is not None
        and number > more_than
    ]
    return min(candidates, default=0)


def first_file_number_to_download(dirname: PathLike) -> int:
    """Return the highest file number present, imported or not, at least 5655."""
    highest = FIRST_FILE_NUMBER
    for name in _plain_files(dirname):
        if name.endswith(DELETED_SUFFIX):
            name = name[: -len(DELETED_SUFFIX)]
        number = _parse_uint(name)
        if number is not None and number >= highest:
            highest = number
    return highest


def download_file(filename: PathLike, url: str) -> int:
    """Download url into filename and return the HTTP status code.

    Nothing is written unless the status is 200. When an imported copy
    (``filename + ".deleted"``) of the same size exists the download is
    dropped; a copy of another size is replaced by the new file.
    """
    filename = os.fspath(filename)
    try:
        response = urllib.request.urlopen(url, timeout=60)
    except urllib.error.HTTPError as exc:
        exc.close()
        return exc.code

    with response:
        if response.status != HTTPStatus.OK:
            return response.status
        fd, tmp = tempfile.mkstemp(dir=os.path.dirname(filename) or ".")
        try:
            with os.fdopen(fd, "wb") as out:
                shutil.copyfileobj(response, out)
                written = out.tell()
            deleted = filename + DELETED_SUFFIX
            try:
                deleted_size: Optional[int] = os.stat(deleted).st_size
            except OSError:
                deleted_size = None
            if deleted_size is not None:
                if deleted_size == written:
                    return HTTPStatus.OK
                with suppress(OSError):
                    os.replace(deleted, filename)
            os.replace(tmp, filename)
        finally:
            with suppress(FileNotFoundError):
                os.remove(tmp)
    return HTTPStatus.OK


def download_closed_channels(
    directory: PathLike,
    base_url: str,
    should_stop: Optional[Callable[[], bool]] = None,
) -> list:
    """Download numbered files until the server stops answering 200.

    Returns the numbers of the files that were fetched successfully.
    """
    directory = os.fspath(directory)
    os.makedirs(directory, mode=0o755, exist_ok=True)
    number = first_file_number_to_download(directory)
    fetched = []
    while should_stop is None or not should_stop():
        name = str(number)
        status = download_file(os.path.join(directory, name), f"{base_url}/{name}")
        if status != HTTPStatus.OK:
            break
        fetched.append(number)
        number += 1
    return fetched


def read_channel_ids(filename: PathLike) -> list:
    """Read a file of big-endian 64-bit short channel ids."""
    with open(filename, "rb") as fh:
        content = fh.read()
    if len(content) % 8 != 0:
        raise ValueError("Bad file")
    return [value for (value,) in struct.iter_unpack(">Q", content)]