#!/usr/bin/env python3
"""
Manifest reader
Loads the layer manifest of an image from the local image store
"""

import os
import re
import json
import logging
from dataclasses import dataclass, field

from .errors import NotFoundError, ParseError

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = 'manifest.json'
LAYER_ARCHIVE_SUFFIX = '.tar.gz'
LAYER_MEDIA_TYPE = 'application/vnd.oci.image.layer.v1.tar+gzip'

DIGEST_PATTERN = re.compile(r'^[a-z0-9]+:[a-f0-9]+$')


@dataclass(frozen=True)
class Layer:
    """A single filesystem changeset, identified by its content digest"""

    digest: str
    media_type: str = LAYER_MEDIA_TYPE
    size: int = 0

    @property
    def archive_name(self):
        """Layer archive filename: digest without algorithm prefix plus archive suffix"""
        return self.digest.split(':', 1)[1] + LAYER_ARCHIVE_SUFFIX


@dataclass
class ImageManifest:
    """Ordered layers of an image; order is the application order"""

    layers: list = field(default_factory=list)
    image_dir: str = ''

    @property
    def digests(self):
        return [layer.digest for layer in self.layers]

    def layer_path(self, layer):
        return os.path.join(self.image_dir, layer.archive_name)

    def to_dict(self):
        return {
            'schemaVersion': 2,
            'mediaType': 'application/vnd.oci.image.manifest.v1+json',
            'layers': [
                {'mediaType': layer.media_type, 'size': layer.size, 'digest': layer.digest}
                for layer in self.layers
            ],
        }


def parse_manifest(content, image_dir=''):
    """
    Parse manifest JSON content

    Args:
        content: Manifest document as str or bytes
        image_dir: Directory the layer archives live in

    Returns:
        ImageManifest

    Raises:
        ParseError: If the document is malformed
    """
    try:
        data = json.loads(content)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ParseError(f"Manifest is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ParseError("Manifest must be a JSON object")

    raw_layers = data.get('layers')
    if not isinstance(raw_layers, list):
        raise ParseError("Manifest has no 'layers' array")

    layers = []
    for i, entry in enumerate(raw_layers):
        if not isinstance(entry, dict):
            raise ParseError(f"Layer {i} is not an object")
        digest = entry.get('digest')
        if not isinstance(digest, str) or not DIGEST_PATTERN.match(digest):
            raise ParseError(f"Layer {i} has an invalid digest: {digest!r}")
        size = entry.get('size', 0)
        if isinstance(size, bool) or not isinstance(size, int):
            raise ParseError(f"Layer {i} has an invalid size: {size!r}")
        layers.append(Layer(
            digest=digest,
            media_type=entry.get('mediaType', LAYER_MEDIA_TYPE),
            size=size,
        ))

    return ImageManifest(layers=layers, image_dir=image_dir)


def read_manifest(image_dir):
    """
    Load the manifest stored in an image directory

    Raises:
        NotFoundError: If manifest.json does not exist
        ParseError: If manifest.json is malformed
    """
    manifest_path = os.path.join(image_dir, MANIFEST_FILENAME)
    logger.info(f"Reading manifest from {image_dir}")
    try:
        with open(manifest_path, 'rb') as f:
            content = f.read()
    except FileNotFoundError as e:
        raise NotFoundError(f"Manifest not found: {manifest_path}") from e

    manifest = parse_manifest(content, image_dir=image_dir)
    logger.debug(f"Manifest has {len(manifest.layers)} layers")
    return manifest


def write_manifest(manifest):
    """Write manifest.json into the manifest's image directory"""
    manifest_path = os.path.join(manifest.image_dir, MANIFEST_FILENAME)
    with open(manifest_path, 'w') as f:
        json.dump(manifest.to_dict(), f, indent=2)
    logger.debug(f"Manifest saved: {manifest_path}")
    return manifest_path
