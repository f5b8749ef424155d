#!/usr/bin/env python3
"""
Configuration for oci-sysext
Resolves the data home directory and loads the optional YAML config file
"""

import os
import logging
from dataclasses import dataclass, field, fields

import yaml

from .errors import ParseError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = 'config.yaml'

# Architecture-specific dynamic loaders, keyed by ELF machine name
DEFAULT_INTERPRETERS = {
    'x86_64': '/lib64/ld-linux-x86-64.so.2',
    'aarch64': '/lib/ld-linux-aarch64.so.1',
    'i386': '/lib/ld-linux.so.2',
    'arm': '/lib/ld-linux-armhf.so.3',
    'riscv': '/lib/ld-linux-riscv64-lp64d.so.1',
    'ppc64': '/lib64/ld64.so.2',
    's390x': '/lib/ld64.so.1',
}


def get_oci_sysext_home():
    """
    Return where the program saves data

    Searched in order: OCI_SYSEXT_HOME, XDG_DATA_HOME, then ~/.local/share
    """
    if os.environ.get('OCI_SYSEXT_HOME'):
        return os.path.join(os.environ['OCI_SYSEXT_HOME'], 'oci-sysext')
    if os.environ.get('XDG_DATA_HOME'):
        return os.path.join(os.environ['XDG_DATA_HOME'], 'oci-sysext')
    return os.path.join(os.path.expanduser('~'), '.local', 'share', 'oci-sysext')


@dataclass
class SysextConfig:
    """Settings shared by every stage of the pipeline"""

    home: str = field(default_factory=get_oci_sysext_home)
    default_fs: str = 'ext4'
    extractor: str = 'tar'
    diff_strategy: str = 'digest'
    relocate: bool = True
    lib_dir: str = 'usr/lib'
    relocate_root: str = None
    interpreters: dict = field(default_factory=lambda: dict(DEFAULT_INTERPRETERS))
    retain: list = field(default_factory=lambda: ['usr', 'opt'])
    prune: bool = True
    os_id: str = '_any'
    operations_log: str = None

    @property
    def images_dir(self):
        return os.path.join(self.home, 'images')

    @property
    def sysext_dir(self):
        return os.path.join(self.home, 'sysexts')

    @property
    def rootfs_dir(self):
        return os.path.join(self.home, 'sysexts-rootfs')

    @property
    def operations_log_path(self):
        return self.operations_log or os.path.join(self.home, 'operations.log')

    @classmethod
    def from_dict(cls, data, home=None):
        """Build a config from a mapping, rejecting unknown keys"""
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ParseError("Config file must contain a mapping")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ParseError(f"Unknown config keys: {', '.join(unknown)}")

        values = dict(data)
        if home:
            values['home'] = home
        if 'interpreters' in values:
            interpreters = dict(DEFAULT_INTERPRETERS)
            interpreters.update(values['interpreters'] or {})
            values['interpreters'] = interpreters
        return cls(**values)


def load_config(path=None, home=None):
    """
    Load configuration

    Args:
        path: Explicit config file; must exist when given
        home: Data home override; the default config file is looked up inside it

    Returns:
        SysextConfig
    """
    base_home = home or get_oci_sysext_home()
    explicit = path is not None
    path = path or os.path.join(base_home, CONFIG_FILENAME)

    if not os.path.exists(path):
        if explicit:
            raise ParseError(f"Config file not found: {path}")
        return SysextConfig(home=base_home)

    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ParseError(f"Invalid config file {path}: {e}") from e

    logger.debug(f"Loaded configuration from {path}")
    return SysextConfig.from_dict(data, home=home)
