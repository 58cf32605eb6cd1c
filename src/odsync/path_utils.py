#!/usr/bin/env python3
"""Path utilities for secure path handling in odsync."""

import logging
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Optional

logger = logging.getLogger(__name__)

TEMP_SUFFIX = '.odsync-part'


class SecurityError(Exception):
    """Raised when a security violation is detected."""
    pass


def normalize_relative_path(raw_path: str) -> str:
    """Turn a remote or scanned path into the canonical relative key.

    Keys always use forward slashes and never start or end with one.

    Args:
        raw_path: Raw path (may carry Graph prefixes or backslashes)

    Returns:
        Sanitized relative path

    Raises:
        SecurityError: If path contains traversal components
    """
    path = raw_path.replace('\\', '/')
    path = path.replace('/drive/root:', '').replace('/drive/root', '')
    path = path.strip('/')

    if not path:
        return ''

    parts = []
    for part in path.split('/'):
        if part in ('', '.'):
            continue
        if part == '..':
            raise SecurityError(f"Path traversal detected: {raw_path}")
        parts.append(part)

    return '/'.join(parts)


def join_remote_path(remote_root: str, rel_path: str) -> str:
    """Join the configured remote root and a relative path."""
    root = normalize_relative_path(remote_root) if remote_root else ''
    rel = normalize_relative_path(rel_path)
    if root and rel:
        return f"{root}/{rel}"
    return root or rel


def is_ignored(rel_path: str) -> bool:
    """Hidden files and in-progress downloads are never synced."""
    parts = PurePosixPath(rel_path).parts
    if any(part.startswith('.') for part in parts):
        return True
    return rel_path.endswith(TEMP_SUFFIX)


def validate_sync_path(rel_path: str, sync_dir: Path) -> Path:
    """Validate path is within sync directory and not a symlink.

    Args:
        rel_path: Relative path to validate
        sync_dir: Sync directory base path

    Returns:
        Validated absolute path

    Raises:
        SecurityError: If path validation fails
    """
    full_path = (sync_dir / rel_path).resolve()
    sync_dir_resolved = sync_dir.resolve()

    try:
        full_path.relative_to(sync_dir_resolved)
    except ValueError:
        raise SecurityError(f"Path traversal detected: {rel_path}")

    # Walk back up to sync_dir; the unresolved chain must be symlink-free
    check_path = sync_dir_resolved / rel_path
    while check_path != sync_dir_resolved:
        if check_path.is_symlink():
            raise SecurityError(f"Symlink detected in path: {rel_path}")
        if check_path == check_path.parent:
            raise SecurityError(f"Path validation failed - reached filesystem root: {rel_path}")
        check_path = check_path.parent

    return full_path


def conflict_copy_name(rel_path: str, when: float, taken=None) -> str:
    """Build the name under which a conflicting local copy is preserved.

    ``docs/report.docx`` becomes ``docs/report (Conflict 2024-05-01 101500).docx``.
    The timestamp only orders conflict copies; it never picks a winner.

    Args:
        rel_path: Original relative path
        when: Timestamp (seconds since epoch) of the local version
        taken: Optional predicate returning True for names already in use

    Returns:
        Relative path of the conflict copy
    """
    path = PurePosixPath(rel_path)
    stamp = datetime.fromtimestamp(when, tz=timezone.utc).strftime('%Y-%m-%d %H%M%S')
    # Path.stem/suffix treat "archive.tar.gz" as stem "archive.tar"
    stem, suffix = path.stem, path.suffix
    base = f"{stem} (Conflict {stamp})"

    candidate = str(path.with_name(f"{base}{suffix}"))
    counter = 2
    while taken is not None and taken(candidate):
        candidate = str(path.with_name(f"{base} {counter}{suffix}"))
        counter += 1
    return candidate


def cleanup_empty_parent_dirs(file_path: Path, sync_dir: Path) -> None:
    """Remove empty parent directories up to sync_dir.

    Args:
        file_path: Path to the deleted file
        sync_dir: Sync directory (don't delete above this)
    """
    try:
        parent = file_path.parent
        sync_dir_resolved = sync_dir.resolve()

        while parent != sync_dir_resolved and parent.exists():
            if not any(parent.iterdir()):
                logger.info(f"Removing empty directory: {parent.relative_to(sync_dir_resolved)}")
                parent.rmdir()
                parent = parent.parent
            else:
                break
    except (OSError, ValueError) as e:
        # Permission error or other OS issue - log but don't fail
        logger.debug(f"Could not clean up empty directories: {e}")


def relative_key(path: Path, sync_dir: Path) -> Optional[str]:
    """Relative key of an absolute path inside sync_dir, or None if outside."""
    try:
        rel = path.relative_to(sync_dir)
    except ValueError:
        return None
    return normalize_relative_path(rel.as_posix())
