"""Filesystem helpers for store and module-directory operations.

Blocking calls are pushed to worker threads with ``asyncio.to_thread`` so
the event loop stays free during large copies.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shutil
import tempfile
from typing import Any, Optional

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._@+-]")


def sanitize_name(name: str) -> str:
    """Make a package name usable as a single path segment (``@a/b`` -> ``@a_b``)."""
    return name.replace("/", "_")


def sanitize_segment(value: str) -> str:
    """Make an arbitrary string (e.g. a URL-valued version) a safe path segment."""
    cleaned = _UNSAFE_CHARS.sub("_", value).strip(".")
    return cleaned or "_"


def read_json(path: str) -> Optional[Any]:
    """Read a JSON file; None when it is missing or not valid JSON."""
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as exc:
        logger.debug("Unreadable JSON at %s: %s", path, exc)
        return None


def write_json_atomic(path: str, data: Any, indent: Optional[int] = None) -> None:
    """Write JSON through a temp file and ``os.replace`` so readers never see a partial file."""
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=indent, ensure_ascii=False)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def remove_path(target: str) -> None:
    """Remove a directory, symlink or file at ``target``; a missing target is ignored."""
    try:
        if os.path.islink(target):
            os.unlink(target)
        elif os.path.isdir(target):
            shutil.rmtree(target)
        else:
            os.unlink(target)
    except FileNotFoundError:
        pass


def copy_tree(src: str, dest: str) -> None:
    """Copy ``src`` to ``dest`` recursively, keeping symlinks as symlinks."""
    os.makedirs(os.path.dirname(dest) or ".", exist_ok=True)
    shutil.copytree(src, dest, symlinks=True)


def symlink_dir(src: str, dest: str) -> None:
    """Create a directory symlink ``dest`` -> ``src``."""
    os.makedirs(os.path.dirname(dest) or ".", exist_ok=True)
    os.symlink(src, dest, target_is_directory=True)


async def aremove_path(target: str) -> None:
    await asyncio.to_thread(remove_path, target)


async def acopy_tree(src: str, dest: str) -> None:
    await asyncio.to_thread(copy_tree, src, dest)


async def aread_json(path: str) -> Optional[Any]:
    return await asyncio.to_thread(read_json, path)


async def link_or_copy(src: str, dest: str) -> str:
    """Symlink ``dest`` to ``src``; copy instead when the link cannot be made.

    Returns:
        str: ``"symlink"`` or ``"copy"``, whichever was used.
    """
    try:
        await asyncio.to_thread(symlink_dir, src, dest)
        return "symlink"
    except (OSError, NotImplementedError) as exc:
        logger.debug("Symlink %s -> %s failed (%s); copying", dest, src, exc)
        await aremove_path(dest)
        await acopy_tree(src, dest)
        return "copy"
