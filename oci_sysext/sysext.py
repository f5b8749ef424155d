#!/usr/bin/env python3
"""
Sysext creation pipeline
manifest -> skip count -> rootfs assembly -> symlink normalization -> binary relocation -> raw image
"""

import logging

from .config import SysextConfig
from .errors import InvalidArgumentError, NotFoundError
from .extractors import TarCommandExtractor, get_extractor
from .image_store import ImageStore
from .layer_diff import calc_skip_layers, validate_skip_count
from .packager import FORMATTER_TOOLS, ImagePackager, validate_fs
from .relocate import LddLister, PatchelfPatcher, relocate_binaries
from .rootfs import RootfsAssembler
from .symlinks import adjust_symlinks
from .tools import CommandRunner, OperationsLog

logger = logging.getLogger(__name__)


class SysextBuilder:
    """Wires the pipeline stages together from a SysextConfig"""

    def __init__(self, config=None, store=None, runner=None, extractor=None, patcher=None, lister=None):
        self.config = config or SysextConfig()
        self.operations_log = OperationsLog(self.config.operations_log_path)
        self.runner = runner or CommandRunner(self.operations_log)
        self.store = store or ImageStore(self.config.images_dir, runner=self.runner)
        self.assembler = RootfsAssembler(
            self.config.rootfs_dir,
            extractor=extractor or get_extractor(self.config.extractor, runner=self.runner),
            retain=self.config.retain,
            prune=self.config.prune,
            os_id=self.config.os_id,
        )
        self.patcher = patcher or PatchelfPatcher(self.runner)
        self.lister = lister or LddLister(self.runner)
        self.packager = ImagePackager(self.config.sysext_dir, runner=self.runner)

    def required_tools(self, fs, relocate):
        """External programs the pipeline will invoke for this run"""
        tools = list(FORMATTER_TOOLS[fs])
        if isinstance(self.assembler.extractor, TarCommandExtractor):
            tools.append('tar')
        if relocate:
            if isinstance(self.patcher, PatchelfPatcher):
                tools.append('patchelf')
            if isinstance(self.lister, LddLister):
                tools.append('ldd')
        return tools

    def check_dependencies(self, fs, relocate):
        missing = self.runner.check_dependencies(self.required_tools(fs, relocate))
        if missing:
            raise NotFoundError(f"Required tools are not installed: {', '.join(missing)}")

    def compute_skip(self, image, manifest, image_source=None, skip_layers=None, diff_strategy=None):
        """Skip count from an explicit value or from diffing against a source image"""
        if skip_layers is not None:
            if image_source:
                raise InvalidArgumentError("Specify either a source image or a skip count, not both")
            return validate_skip_count(skip_layers, len(manifest.layers))

        reference = None
        if image_source and image_source != image:
            logger.info(f"Reading {image_source}'s manifest")
            reference = self.store.get_manifest(image_source)
        skip = calc_skip_layers(manifest, reference, strategy=diff_strategy or self.config.diff_strategy)
        return validate_skip_count(skip, len(manifest.layers))

    def create(self, image, name, fs=None, image_source=None, skip_layers=None, diff_strategy=None, relocate=None):
        """
        Build <sysext_dir>/<name>.raw from an image

        Args:
            image: Image reference
            name: Sysext name
            fs: squashfs, btrfs or ext4; defaults to the configured filesystem
            image_source: Reference image whose leading layers are left out
            skip_layers: Explicit number of leading layers to leave out
            diff_strategy: 'digest' or 'length'
            relocate: Whether to patch binaries; defaults to the config

        Returns:
            str: Path of the raw image
        """
        fs = validate_fs(fs or self.config.default_fs)
        if not image or not name:
            raise InvalidArgumentError("missing required arguments: image and name must be specified")
        if relocate is None:
            relocate = self.config.relocate

        logger.info(f"Starting sysext creation: image={image}, name={name}, fs={fs}")
        self.check_dependencies(fs, relocate)
        self.store.ensure(image)
        if image_source and image_source != image:
            self.store.ensure(image_source)

        manifest = self.store.get_manifest(image)
        skip = self.compute_skip(image, manifest, image_source, skip_layers, diff_strategy)

        logger.info("Step 1/4: Assembling rootfs...")
        rootfs_dir = self.assembler.assemble(image, name, manifest, skip)

        logger.info("Step 2/4: Adjusting symlinks...")
        adjust_symlinks(rootfs_dir, self.operations_log)

        if relocate:
            logger.info("Step 3/4: Relocating binaries...")
            relocate_binaries(
                rootfs_dir,
                lib_dir=self.config.lib_dir,
                interpreters=self.config.interpreters,
                new_root=self.config.relocate_root,
                patcher=self.patcher,
                lister=self.lister,
                operations_log=self.operations_log,
            )
        else:
            logger.info("Step 3/4: Binary relocation disabled, skipping")

        logger.info("Step 4/4: Creating raw image...")
        return self.packager.package(rootfs_dir, name, fs)
