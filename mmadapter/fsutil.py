"""Filesystem helpers: scoped path joining and recursive removal."""

from __future__ import annotations

import errno
import os
import shutil
import stat
from typing import Callable

_MAX_SYMLINKS = 255


def _clean(path: str) -> str:
    cleaned = os.path.normpath(path) if path else "."
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def secure_join(base: str, *args: str) -> str:
    """Join ``args`` onto ``base`` so that the result never leaves ``base``.

    ``..`` components and symbolic links found under ``base`` are resolved as
    if ``base`` were the filesystem root.
    """
    root = _clean(base)
    unsafe = "/".join(args)
    resolved = ""
    links = 0
    while unsafe:
        if links > _MAX_SYMLINKS:
            raise OSError(errno.ELOOP, "too many levels of symbolic links", root + "/" + unsafe)
        part, _, unsafe = unsafe.partition("/")
        scoped = _clean("/" + resolved + part)
        if scoped == "/":
            resolved = ""
            continue
        full = _clean(root + scoped)
        try:
            info = os.lstat(full)
        except (FileNotFoundError, NotADirectoryError):
            info = None
        if info is None or not stat.S_ISLNK(info.st_mode):
            resolved += part + "/"
            continue
        links += 1
        target = os.readlink(full)
        if os.path.isabs(target):
            resolved = ""
        unsafe = target + "/" + unsafe
    return _clean(root + _clean("/" + resolved))


def remove_path(path: str) -> None:
    """Remove ``path`` and anything below it; a missing path is not an error.

    A symbolic link is removed itself, never what it points to.
    """
    try:
        info = os.lstat(path)
    except FileNotFoundError:
        return
    if stat.S_ISDIR(info.st_mode):
        shutil.rmtree(path)
    else:
        os.unlink(path)


def clear_directory_contents(
    path: str, predicate: Callable[[os.DirEntry], bool] | None
) -> None:
    """Remove the entries of directory ``path`` accepted by ``predicate``.

    With no predicate every entry is removed. A missing directory has nothing
    to clear.
    """
    try:
        entries = list(os.scandir(path))
    except FileNotFoundError:
        return
    for entry in entries:
        if predicate is None or predicate(entry):
            remove_path(entry.path)