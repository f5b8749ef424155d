#!/usr/bin/env python3
"""
Local image store
Keeps pulled images as a manifest.json plus gzip layer archives named after their digest.
Images enter the store from `docker save` style archives, either given directly or
fetched with skopeo.
"""

import os
import json
import gzip
import time
import shutil
import hashlib
import logging
import tarfile
import tempfile

from .errors import IOFailure, NotFoundError, ParseError
from .manifest import ImageManifest, Layer, LAYER_MEDIA_TYPE, MANIFEST_FILENAME, read_manifest, write_manifest
from .tools import CommandRunner

logger = logging.getLogger(__name__)

INFO_FILENAME = 'image.info'
GZIP_MAGIC = b'\x1f\x8b'
CHUNK_SIZE = 1024 * 1024


def safe_image_name(image):
    """Filesystem-safe directory name for an image reference"""
    return image.replace(':', '_').replace('/', '_').replace('@', '_').replace('<', '').replace('>', '')


def tagged_reference(image):
    """Append :latest when a reference carries neither tag nor digest"""
    if '@' in image:
        return image
    last_colon = image.rfind(':')
    last_slash = image.rfind('/')
    if last_colon > last_slash:
        return image
    return f"{image}:latest"


class ImageStore:
    """Resolves, imports and pulls images under a single directory"""

    def __init__(self, images_dir, runner=None):
        self.images_dir = images_dir
        self.runner = runner or CommandRunner()

    def get_path(self, image):
        return os.path.join(self.images_dir, safe_image_name(image))

    def exists(self, image):
        return os.path.exists(os.path.join(self.get_path(image), MANIFEST_FILENAME))

    def get_manifest(self, image):
        """Read the stored manifest of an image"""
        if not self.exists(image):
            raise NotFoundError(f"Image not found in local store: {image}")
        return read_manifest(self.get_path(image))

    def ensure(self, image):
        """Make sure an image is present locally, pulling it when missing"""
        logger.info(f"Ensuring image {image} ...")
        if not self.exists(image):
            self.pull(image)
        return self.get_path(image)

    def pull(self, image, force=False):
        """Fetch an image with skopeo and import it"""
        if not force and self.exists(image):
            info = self.load_info(image)
            logger.info("Image already exists in local store")
            if info:
                logger.info(f"Stored at: {info.get('created_time_str', 'Unknown')}")
            return self.get_path(image)

        logger.info(f"Pulling image: {image}")
        os.makedirs(self.images_dir, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix='oci_sysext_pull_', dir=self.images_dir) as temp_dir:
            archive = os.path.join(temp_dir, 'image.tar')
            destination = f"docker-archive:{archive}"
            if '@' not in image:
                destination += f":{tagged_reference(image)}"
            self.runner.run(['skopeo', 'copy', f"docker://{image}", destination])
            self.load_archive(archive, image=image, source='registry')
        return self.get_path(image)

    def load_archive(self, tar_path, image=None, source='local'):
        """
        Import a `docker save` archive

        Args:
            tar_path: Archive path
            image: Reference to store it under; defaults to the archive's first RepoTag
            source: Recorded in image.info

        Returns:
            str: The image reference the archive was stored under
        """
        if not os.path.exists(tar_path):
            raise NotFoundError(f"File does not exist: {tar_path}")

        try:
            with tarfile.open(tar_path, 'r') as tar:
                entry = self._read_archive_manifest(tar)
                if not image:
                    repo_tags = entry.get('RepoTags') or []
                    if repo_tags:
                        image = repo_tags[0]
                    else:
                        image = f"<none>:<none>_{os.path.basename(entry['Config'])[:12]}"

                image_dir = self.get_path(image)
                if os.path.exists(image_dir):
                    logger.info(f"Image already exists, will update: {image_dir}")
                    shutil.rmtree(image_dir)
                os.makedirs(image_dir)

                layers = []
                for i, layer_member in enumerate(entry['Layers'], 1):
                    logger.info(f"Importing layer {i}/{len(entry['Layers'])}: {layer_member}")
                    layers.append(self._import_layer(tar, layer_member, image_dir))
        except tarfile.TarError as e:
            raise ParseError(f"Corrupted tar archive file: {tar_path} - {e}") from e
        except OSError as e:
            raise IOFailure(f"Failed to load image from {tar_path}: {e}") from e

        write_manifest(ImageManifest(layers=layers, image_dir=image_dir))
        self._register_image(image, image_dir, tar_path, source)
        logger.info(f"✓ Successfully loaded image: {image}")
        return image

    def _read_archive_manifest(self, tar):
        """Validate the archive's manifest.json and return its first entry"""
        try:
            manifest_file = tar.extractfile('manifest.json')
        except KeyError as e:
            raise ParseError("Invalid Docker image tar: missing manifest.json") from e
        if manifest_file is None:
            raise ParseError("Invalid Docker image tar: missing manifest.json")
        try:
            manifest_data = json.load(manifest_file)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ParseError("Invalid Docker image tar: manifest.json is not valid JSON") from e

        if not isinstance(manifest_data, list) or not manifest_data:
            raise ParseError("Invalid Docker image tar: manifest.json is empty")

        entry = manifest_data[0]
        if not isinstance(entry, dict) or not entry.get('Config'):
            raise ParseError("Invalid Docker image tar: missing Config field in manifest")
        if not isinstance(entry.get('Layers'), list):
            raise ParseError("Invalid Docker image tar: missing Layers field in manifest")

        members = set(tar.getnames())
        for layer in entry['Layers']:
            if layer not in members:
                raise ParseError(f"Invalid Docker image tar: missing layer file {layer}")
        return entry

    def _import_layer(self, tar, member_name, image_dir):
        """Store one layer gzip-compressed under its sha256 digest"""
        source = tar.extractfile(member_name)
        if source is None:
            raise ParseError(f"Layer {member_name} is not a regular file")

        hasher = hashlib.sha256()
        fd, temp_path = tempfile.mkstemp(dir=image_dir, suffix='.partial')
        try:
            with os.fdopen(fd, 'wb') as raw:
                head = source.read(2)
                if head == GZIP_MAGIC:
                    self._copy_stream(source, raw, hasher, head)
                else:
                    gz = _HashingWriter(raw, hasher)
                    with gzip.GzipFile(filename='', mode='wb', fileobj=gz, mtime=0) as compressed:
                        compressed.write(head)
                        shutil.copyfileobj(source, compressed, CHUNK_SIZE)
            size = os.path.getsize(temp_path)
            layer = Layer(digest=f"sha256:{hasher.hexdigest()}", media_type=LAYER_MEDIA_TYPE, size=size)
            os.replace(temp_path, os.path.join(image_dir, layer.archive_name))
        finally:
            if os.path.exists(temp_path):
                os.remove(temp_path)
        return layer

    @staticmethod
    def _copy_stream(source, target, hasher, head=b''):
        hasher.update(head)
        target.write(head)
        while True:
            chunk = source.read(CHUNK_SIZE)
            if not chunk:
                break
            hasher.update(chunk)
            target.write(chunk)

    def _register_image(self, image, image_dir, original, source):
        created_time = int(time.time())
        info = {
            'image': image,
            'path': image_dir,
            'created_time': created_time,
            'created_time_str': time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(created_time)),
            'source': source,
            'original_tar': original if source == 'local' else None,
        }
        with open(os.path.join(image_dir, INFO_FILENAME), 'w') as f:
            json.dump(info, f, indent=2)
        logger.info(f"Image registered: {image}")

    def load_info(self, image):
        info_path = os.path.join(self.get_path(image), INFO_FILENAME)
        if not os.path.exists(info_path):
            return None
        try:
            with open(info_path, 'r') as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to read image info: {e}")
            return None


class _HashingWriter:
    """File-like wrapper that hashes everything written through it"""

    def __init__(self, target, hasher):
        self.target = target
        self.hasher = hasher

    def write(self, data):
        self.hasher.update(data)
        return self.target.write(data)

    def flush(self):
        self.target.flush()
