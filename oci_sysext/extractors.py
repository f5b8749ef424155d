#!/usr/bin/env python3
"""
Layer archive extractors
Both implementations expose a single extract(archive_path, target_dir) operation
"""

import os
import shutil
import logging
import tarfile
import posixpath

from .errors import InvalidArgumentError, IOFailure, NotFoundError, ParseError
from .symlinks import resolve_in_root
from .tools import CommandRunner

logger = logging.getLogger(__name__)

WHITEOUT_PREFIX = '.wh.'
OPAQUE_WHITEOUT = '.wh..wh..opq'


class TarCommandExtractor:
    """Extract layers with the tar command; compression is detected by tar"""

    name = 'tar'

    def __init__(self, runner=None):
        self.runner = runner or CommandRunner()

    def extract(self, archive_path, target_dir):
        if not os.path.exists(archive_path):
            raise NotFoundError(f"Layer archive not found: {archive_path}")
        cmd = ['tar', '--exclude=dev/*', '-xf', archive_path, '-C', target_dir]
        self.runner.run(cmd, record=False)


class TarfileExtractor:
    """Extract layers in-process with the tarfile module, applying OCI whiteouts"""

    name = 'tarfile'

    def extract(self, archive_path, target_dir):
        if not os.path.exists(archive_path):
            raise NotFoundError(f"Layer archive not found: {archive_path}")

        root = os.path.realpath(target_dir)
        whiteout_count = 0
        try:
            with tarfile.open(archive_path, 'r:*') as tar:
                for member in tar:
                    name = self._normalize_name(member.name)
                    if name is None:
                        logger.warning(f"Skipping unsafe path: {member.name}")
                        continue
                    if name == '' or name == 'dev' or name.startswith('dev/'):
                        continue
                    if member.isdev() or member.isfifo():
                        logger.debug(f"Skipping device/FIFO file: {member.name}")
                        continue

                    basename = os.path.basename(name)
                    parent = resolve_in_root(root, os.path.dirname(name))
                    name = posixpath.join(parent, basename) if parent else basename
                    if basename.startswith(WHITEOUT_PREFIX):
                        self._apply_whiteout(root, name)
                        whiteout_count += 1
                        continue

                    self._clear_conflict(os.path.join(root, name), member)
                    member.name = name
                    if member.islnk():
                        member.linkname = self._resolve_link_name(root, member.linkname)
                    self._extract_member(tar, member, root)
        except tarfile.TarError as e:
            raise ParseError(f"Corrupted layer archive {archive_path}: {e}") from e
        except OSError as e:
            raise IOFailure(f"Failed to extract {archive_path}: {e}") from e

        if whiteout_count:
            logger.debug(f"Applied {whiteout_count} whiteout entries")

    @staticmethod
    def _normalize_name(name):
        parts = [p for p in name.split('/') if p not in ('', '.')]
        if '..' in parts or name.startswith('/'):
            return None
        return '/'.join(parts)

    @staticmethod
    def _resolve_link_name(root, linkname):
        name = TarfileExtractor._normalize_name(linkname)
        if name is None:
            raise IOFailure(f"Refusing hard link to unsafe path: {linkname}")
        parent = resolve_in_root(root, os.path.dirname(name))
        return posixpath.join(parent, os.path.basename(name)) if parent else os.path.basename(name)

    @staticmethod
    def _apply_whiteout(root, name):
        dirname, basename = os.path.split(name)
        if basename == OPAQUE_WHITEOUT:
            directory = os.path.join(root, dirname)
            if os.path.isdir(directory) and not os.path.islink(directory):
                for entry in os.listdir(directory):
                    _remove_path(os.path.join(directory, entry))
            return
        _remove_path(os.path.join(root, dirname, basename[len(WHITEOUT_PREFIX):]))

    @staticmethod
    def _clear_conflict(path, member):
        # tarfile does not replace an existing entry of a different type
        if not os.path.lexists(path):
            return
        if os.path.islink(path) or not os.path.isdir(path):
            os.unlink(path)
        elif not member.isdir():
            shutil.rmtree(path)

    @staticmethod
    def _extract_member(tar, member, root):
        if hasattr(tarfile, 'fully_trusted_filter'):
            tar.extract(member, root, numeric_owner=True, filter='fully_trusted')
        else:
            tar.extract(member, root, numeric_owner=True)


def _remove_path(path):
    if os.path.islink(path) or (os.path.lexists(path) and not os.path.isdir(path)):
        os.unlink(path)
    elif os.path.isdir(path):
        shutil.rmtree(path)


def get_extractor(name, runner=None):
    """Return the extractor registered under name"""
    if name == TarCommandExtractor.name:
        return TarCommandExtractor(runner=runner)
    if name == TarfileExtractor.name:
        return TarfileExtractor()
    raise InvalidArgumentError(f"Unknown extractor: {name}")
