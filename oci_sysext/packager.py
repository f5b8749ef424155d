#!/usr/bin/env python3
"""
Image packager
Turns a finished rootfs tree into a single raw filesystem image with an external formatter
"""

import os
import logging

from .errors import InvalidArgumentError, IOFailure
from .tools import CommandRunner

logger = logging.getLogger(__name__)

FS_SQUASHFS = 'squashfs'
FS_BTRFS = 'btrfs'
FS_EXT4 = 'ext4'
SUPPORTED_FS = (FS_SQUASHFS, FS_BTRFS, FS_EXT4)

FORMATTER_TOOLS = {
    FS_SQUASHFS: ['mksquashfs'],
    FS_BTRFS: ['mkfs.btrfs'],
    FS_EXT4: ['truncate', 'mkfs.ext4', 'resize2fs'],
}

# Headroom added to the measured tree size for ext4 metadata
EXT4_MARGIN_MB = 32


def validate_fs(fs):
    if fs not in SUPPORTED_FS:
        raise InvalidArgumentError(f"Unsupported fs type: {fs} (choose from {', '.join(SUPPORTED_FS)})")
    return fs


def disk_usage_bytes(path):
    """Sum of apparent sizes of every non-directory entry below path"""
    total = 0

    def on_error(e):
        raise IOFailure(f"Failed to measure {e.filename}: {e}") from e

    for dirpath, dirnames, filenames in os.walk(path, onerror=on_error):
        for name in filenames + [d for d in dirnames if os.path.islink(os.path.join(dirpath, d))]:
            try:
                total += os.lstat(os.path.join(dirpath, name)).st_size
            except OSError as e:
                raise IOFailure(f"Failed to measure {name}: {e}") from e
    return total


def disk_usage_megabytes(path, margin=EXT4_MARGIN_MB):
    """Tree size in MiB, halves rounded up, plus margin"""
    return int(disk_usage_bytes(path) / 1024 / 1024 + 0.5) + margin


class ImagePackager:
    """Produces <sysext_dir>/<name>.raw from a rootfs tree"""

    def __init__(self, sysext_dir, runner=None):
        self.sysext_dir = sysext_dir
        self.runner = runner or CommandRunner()

    def output_path(self, name):
        return os.path.join(self.sysext_dir, f"{name}.raw")

    def package(self, rootfs_dir, name, fs=FS_EXT4):
        """
        Build the raw image

        Args:
            rootfs_dir: Assembled tree
            name: Sysext name; the output is <name>.raw
            fs: One of squashfs, btrfs, ext4

        Returns:
            str: Path of the raw image
        """
        validate_fs(fs)
        os.makedirs(self.sysext_dir, exist_ok=True)
        output = self.output_path(name)
        if os.path.lexists(output):
            logger.info(f"Removing stale image: {output}")
            try:
                os.remove(output)
            except OSError as e:
                raise IOFailure(f"Failed to remove {output}: {e}") from e

        logger.info(f"Creating {fs} raw file: {output}")
        if fs == FS_SQUASHFS:
            self.runner.run(['mksquashfs', rootfs_dir, output])
        elif fs == FS_BTRFS:
            self.runner.run([
                'mkfs.btrfs', '--mixed', '-m', 'single', '-d', 'single',
                '--shrink', '--rootdir', rootfs_dir, output,
            ])
        else:
            self._package_ext4(rootfs_dir, output)

        logger.info(f"✓ Successfully created sysext image: {output}")
        return output

    def _package_ext4(self, rootfs_dir, output):
        size = disk_usage_megabytes(rootfs_dir)
        logger.info(f"Creating image of size {size}M")
        self.runner.run(['truncate', '-s', f"{size}M", output])
        self.runner.run(['mkfs.ext4', '-E', 'root_owner=0:0', '-d', rootfs_dir, output])
        self.runner.run(['resize2fs', '-M', output])
