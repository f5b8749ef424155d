#!/usr/bin/env python3
"""
Symlink normalizer
Re-anchors symlinks that only make sense under the original root so they resolve inside the rootfs tree
"""

import os
import logging
import posixpath
from dataclasses import dataclass

from .errors import IOFailure
from .tools import OperationsLog

logger = logging.getLogger(__name__)

MAX_SYMLINK_FOLLOWS = 40


@dataclass
class SymlinkEntry:
    path: str
    original_target: str
    absolute: bool
    resolves: bool = True
    rewritten_target: str = None


def reanchor(rootfs_dir, target):
    """Map a link target onto the tree as if the tree were /; '..' cannot climb above it"""
    relative = posixpath.normpath('/' + target).lstrip('/')
    if not relative or relative == '.':
        return rootfs_dir
    return os.path.join(rootfs_dir, relative)


def resolve_in_root(rootfs_dir, relative):
    """
    Resolve a path below the tree as if the tree were /

    Symlinks met along the way are followed, absolute targets restart at the
    tree root and '..' never climbs above it.

    Returns:
        str: The resolved path, relative to rootfs_dir ('' for the root itself)
    """
    pending = [p for p in relative.split('/') if p not in ('', '.')]
    resolved = []
    followed = 0
    while pending:
        part = pending.pop(0)
        if part == '..':
            if resolved:
                resolved.pop()
            continue
        candidate = os.path.join(rootfs_dir, *resolved, part)
        if not os.path.islink(candidate):
            resolved.append(part)
            continue
        followed += 1
        if followed > MAX_SYMLINK_FOLLOWS:
            raise IOFailure(f"Too many levels of symbolic links resolving {relative}")
        target = os.readlink(candidate)
        if target.startswith('/'):
            resolved = []
        pending = [p for p in target.split('/') if p not in ('', '.')] + pending
    return '/'.join(resolved)


def scan_symlinks(rootfs_dir):
    """Snapshot every symlink in the tree without following directory links"""
    entries = []

    def on_error(e):
        raise IOFailure(f"Failed to walk {e.filename}: {e}") from e

    for dirpath, dirnames, filenames in os.walk(rootfs_dir, onerror=on_error):
        for name in sorted(dirnames + filenames):
            path = os.path.join(dirpath, name)
            if not os.path.islink(path):
                continue
            try:
                target = os.readlink(path)
            except OSError as e:
                logger.error(f"Failed to read symlink: {path}, error: {e}")
                raise IOFailure(f"Failed to read symlink {path}: {e}") from e
            absolute = os.path.isabs(target)
            resolves = True
            if not absolute:
                resolves = os.path.exists(os.path.join(dirpath, target))
            entries.append(SymlinkEntry(path, target, absolute, resolves))
    return entries


def plan_symlink_rewrites(rootfs_dir, entries):
    """
    Decide which links to rewrite

    Absolute targets are always re-anchored under the tree. Relative targets are
    re-anchored only when they do not resolve from the link's own directory.

    Returns:
        list: The entries to rewrite, with rewritten_target filled in
    """
    plan = []
    for entry in entries:
        if entry.absolute or not entry.resolves:
            entry.rewritten_target = reanchor(rootfs_dir, entry.original_target)
            plan.append(entry)
    return plan


def apply_symlink_rewrites(plan, operations_log=None):
    """Replace each planned link in place; the first failure aborts"""
    operations_log = operations_log or OperationsLog()
    for entry in plan:
        try:
            os.remove(entry.path)
        except OSError as e:
            logger.error(f"Failed to remove old symlink: {entry.path}, error: {e}")
            raise IOFailure(f"Failed to remove old symlink {entry.path}: {e}") from e
        try:
            os.symlink(entry.rewritten_target, entry.path)
        except OSError as e:
            logger.error(f"Failed to create new symlink: {entry.path} -> {entry.rewritten_target}, error: {e}")
            raise IOFailure(f"Failed to create symlink {entry.path}: {e}") from e
        operations_log.record('symlink', entry.path, entry.original_target, entry.rewritten_target)
        kind = 'symlink' if entry.absolute else 'relative symlink'
        logger.debug(f"Updated {kind}: {entry.path} -> {entry.rewritten_target}")


def adjust_symlinks(rootfs_dir, operations_log=None):
    """Normalize all symlinks in the tree; returns the rewritten entries"""
    logger.info(f"Adjusting symlinks in {rootfs_dir}")
    plan = plan_symlink_rewrites(rootfs_dir, scan_symlinks(rootfs_dir))
    apply_symlink_rewrites(plan, operations_log)
    logger.info(f"Symlinks adjusted successfully ({len(plan)} rewritten)")
    return plan
