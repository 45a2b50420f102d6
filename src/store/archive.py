"""Safe tarball extraction with a stripped leading path component."""

from __future__ import annotations

import logging
import os
import posixpath
import shutil
import tarfile
from typing import Optional

from common.errors import ArchiveError

logger = logging.getLogger(__name__)


def _strip_member_name(name: str, strip: int) -> Optional[str]:
    """Member path with ``strip`` leading components removed; None when nothing is left.

    Raises:
        ArchiveError: the path is absolute or escapes the destination.
    """
    normalized = name.replace("\\", "/")
    if normalized.startswith("/") or (len(normalized) > 1 and normalized[1] == ":"):
        raise ArchiveError(f"Refusing absolute archive member path: {name}")
    parts = [p for p in normalized.split("/") if p not in ("", ".")]
    if ".." in parts:
        raise ArchiveError(f"Refusing archive member outside destination: {name}")
    parts = parts[strip:]
    if not parts:
        return None
    return "/".join(parts)


def _inside(root: str, path: str) -> bool:
    root = os.path.realpath(root)
    return os.path.commonpath([root, os.path.realpath(path)]) == root


def extract_archive(archive_path: str, dest_dir: str, strip: int = 1) -> int:
    """Extract a (gzipped) tarball into ``dest_dir``, dropping ``strip`` leading components.

    Regular files, directories, and symlinks or hardlinks that stay inside
    ``dest_dir`` are extracted; device nodes and FIFOs are skipped.

    Returns:
        int: Number of files written.

    Raises:
        ArchiveError: the archive is unreadable or has an unsafe member.
    """
    os.makedirs(dest_dir, exist_ok=True)
    written = 0
    try:
        with tarfile.open(archive_path, "r:*") as tar:
            for member in tar:
                rel = _strip_member_name(member.name, strip)
                if rel is None:
                    continue
                target = os.path.join(dest_dir, *rel.split("/"))
                if not _inside(dest_dir, os.path.dirname(target)):
                    raise ArchiveError(f"Refusing archive member outside destination: {member.name}")

                if member.isdir():
                    os.makedirs(target, exist_ok=True)
                elif member.isfile():
                    os.makedirs(os.path.dirname(target), exist_ok=True)
                    source = tar.extractfile(member)
                    if source is None:
                        continue
                    with source, open(target, "wb") as out:
                        shutil.copyfileobj(source, out)
                    # npm packs everything 0644 or 0755
                    os.chmod(target, 0o755 if member.mode & 0o111 else 0o644)
                    written += 1
                elif member.issym():
                    link_target = posixpath.normpath(
                        posixpath.join(posixpath.dirname(rel), member.linkname)
                    )
                    if member.linkname.startswith("/") or link_target.startswith(".."):
                        raise ArchiveError(f"Refusing symlink outside destination: {member.name}")
                    os.makedirs(os.path.dirname(target), exist_ok=True)
                    if os.path.lexists(target):
                        os.unlink(target)
                    os.symlink(member.linkname, target)
                elif member.islnk():
                    link_rel = _strip_member_name(member.linkname, strip)
                    source_path = os.path.join(dest_dir, *link_rel.split("/")) if link_rel else None
                    if not source_path or not os.path.isfile(source_path) or not _inside(dest_dir, source_path):
                        raise ArchiveError(f"Refusing hardlink to missing or outside member: {member.name}")
                    os.makedirs(os.path.dirname(target), exist_ok=True)
                    shutil.copy2(source_path, target)
                    written += 1
                else:
                    logger.debug("Skipping special archive member %s", member.name)
    except (tarfile.TarError, EOFError, OSError) as exc:
        raise ArchiveError(f"Could not extract {archive_path}: {exc}") from exc
    return written
