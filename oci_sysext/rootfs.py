#!/usr/bin/env python3
"""
Rootfs assembler
Unpacks image layers in manifest order into a working directory keyed by the image,
prunes everything a sysext cannot carry and stamps the extension-release marker
"""

import os
import shutil
import hashlib
import logging

from .errors import ExternalToolError, IOFailure, SysextError
from .extractors import TarCommandExtractor
from .layer_diff import validate_skip_count

logger = logging.getLogger(__name__)

EXTENSION_RELEASE_DIR = os.path.join('usr', 'lib', 'extension-release.d')


def get_id(image):
    """Stable md5-based identifier for an image reference"""
    return hashlib.md5(image.encode()).hexdigest()


def extension_release_path(rootfs_dir, name):
    return os.path.join(rootfs_dir, EXTENSION_RELEASE_DIR, f"extension-release.{name}")


def extension_release_content(os_id='_any', reload_manager=True):
    lines = [f"ID={os_id}"]
    if reload_manager:
        lines.append("EXTENSION_RELOAD_MANAGER=1")
    return '\n'.join(lines) + '\n'


class RootfsAssembler:
    """Builds the rootfs tree for one image inside the rootfs arena"""

    def __init__(self, arena_dir, extractor=None, retain=('usr', 'opt'), prune=True, os_id='_any'):
        self.arena_dir = arena_dir
        self.extractor = extractor or TarCommandExtractor()
        self.retain = tuple(retain)
        self.prune = prune
        self.os_id = os_id

    def rootfs_path(self, image):
        """Working directory owned by the given image reference"""
        return os.path.join(self.arena_dir, get_id(image))

    def clean(self, image):
        """Remove any tree left behind by a previous run"""
        rootfs_dir = self.rootfs_path(image)
        if os.path.lexists(rootfs_dir):
            logger.info(f"Cleaning up rootfs dir: {rootfs_dir}")
            try:
                shutil.rmtree(rootfs_dir)
            except OSError as e:
                raise IOFailure(f"Failed to remove {rootfs_dir}: {e}") from e

    def assemble(self, image, name, manifest, skip=0):
        """
        Materialize the rootfs tree for an image

        Args:
            image: Image reference, used to key the working directory
            name: Sysext name, embedded in the extension-release filename
            manifest: ImageManifest of the image
            skip: Number of leading layers to leave out

        Returns:
            str: Path of the assembled tree
        """
        validate_skip_count(skip, len(manifest.layers))

        rootfs_dir = self.rootfs_path(image)
        self.clean(image)
        logger.info(f"Creating directory: {rootfs_dir}")
        try:
            os.makedirs(rootfs_dir)
        except OSError as e:
            raise IOFailure(f"Failed to create {rootfs_dir}: {e}") from e

        self.extract_layers(manifest, rootfs_dir, skip)

        if self.prune:
            self.apply_retention(rootfs_dir)

        self.write_extension_release(rootfs_dir, name)
        logger.info("Rootfs creation completed successfully")
        return rootfs_dir

    def extract_layers(self, manifest, rootfs_dir, skip=0):
        """Extract every layer from index skip onwards, in order; returns the extracted layers"""
        layers = manifest.layers
        extracted = []
        logger.info(f"Starting extraction of {len(layers) - skip} of {len(layers)} layers")

        for i, layer in enumerate(layers):
            if i < skip:
                logger.info(f"Skipping layer {i + 1}/{len(layers)}: {layer.digest}")
                continue

            layer_path = manifest.layer_path(layer)
            logger.info(f"Extracting layer {i + 1}/{len(layers)}: {layer.digest}")
            try:
                self.extractor.extract(layer_path, rootfs_dir)
            except ExternalToolError as e:
                raise ExternalToolError(
                    e.cmd, e.returncode, e.output, context=f"Failed to extract layer {layer.digest}"
                ) from e
            except SysextError as e:
                raise type(e)(f"Failed to extract layer {layer.digest}: {e}") from e
            extracted.append(layer)

        logger.info("All layers extracted successfully")
        return extracted

    def apply_retention(self, rootfs_dir):
        """Delete top-level entries that are not retained; returns the removed names"""
        removed = []
        for entry in sorted(os.listdir(rootfs_dir)):
            if entry in self.retain:
                continue
            path = os.path.join(rootfs_dir, entry)
            logger.info(f"Removing unneeded dir: {entry}")
            try:
                if os.path.isdir(path) and not os.path.islink(path):
                    shutil.rmtree(path)
                else:
                    os.unlink(path)
            except OSError as e:
                raise IOFailure(f"Failed to remove {path}: {e}") from e
            removed.append(entry)
        return removed

    def write_extension_release(self, rootfs_dir, name):
        """Write usr/lib/extension-release.d/extension-release.<name>"""
        path = extension_release_path(rootfs_dir, name)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, 'w') as f:
                f.write(extension_release_content(self.os_id))
            os.chmod(path, 0o644)
        except OSError as e:
            raise IOFailure(f"Failed to write extension-release file: {e}") from e
        logger.info(f"Extension release written: {path}")
        return path
