#!/usr/bin/env python3
"""
Shared helpers for the test suite: fake tool runners, synthetic layers and ELF files
"""

import io
import os
import json
import gzip
import struct
import hashlib
import tarfile

from oci_sysext.errors import ExternalToolError
from oci_sysext.manifest import ImageManifest, Layer, write_manifest


class FakeRunner:
    """Records commands instead of running them"""

    def __init__(self, fail_on=None, missing=None, handlers=None):
        self.commands = []
        self.fail_on = fail_on
        self.missing = list(missing or [])
        self.handlers = handlers or {}

    def run(self, cmd, cwd=None, record=True):
        self.commands.append(list(cmd))
        if self.fail_on and cmd[0] == self.fail_on:
            raise ExternalToolError(cmd, 1, f"{cmd[0]}: simulated failure")
        handler = self.handlers.get(cmd[0])
        if handler:
            return handler(cmd) or ''
        return ''

    def check_dependencies(self, tools):
        return [tool for tool in tools if tool in self.missing]

    def programs(self):
        return [cmd[0] for cmd in self.commands]


class RecordingExtractor:
    """Extractor that only remembers which archives it was asked to unpack"""

    def __init__(self):
        self.calls = []

    def extract(self, archive_path, target_dir):
        self.calls.append((archive_path, target_dir))


class FakePatcher:
    def __init__(self):
        self.calls = []

    def patch(self, path, interpreter=None, rpath=None):
        self.calls.append((path, interpreter, rpath))


class FakeLister:
    def __init__(self, dependencies=None):
        self.dependencies = dependencies or {}
        self.calls = []

    def list_dependencies(self, path):
        self.calls.append(path)
        return list(self.dependencies.get(os.path.basename(path), []))


def build_tar(entries, compress=True):
    """
    Build a tar archive in memory

    entries is a list of (name, value) where value is bytes for a regular file,
    ('dir',) for a directory, ('symlink', target) for a symlink or
    ('file', data, mode) for a file with explicit permission bits.
    """
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode='w') as tar:
        for name, value in entries:
            info = tarfile.TarInfo(name)
            info.mtime = 0
            data = None
            if isinstance(value, bytes):
                data = value
                info.mode = 0o644
            elif value[0] == 'dir':
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
            elif value[0] == 'symlink':
                info.type = tarfile.SYMTYPE
                info.linkname = value[1]
            elif value[0] == 'fifo':
                info.type = tarfile.FIFOTYPE
            else:
                data = value[1]
                info.mode = value[2]
            if data is not None:
                info.size = len(data)
                tar.addfile(info, io.BytesIO(data))
            else:
                tar.addfile(info)
    raw = buffer.getvalue()
    if compress:
        return gzip.compress(raw, mtime=0)
    return raw


def write_layer(image_dir, entries):
    """Write a gzip layer archive named after its digest and return the Layer"""
    os.makedirs(image_dir, exist_ok=True)
    data = build_tar(entries)
    digest = hashlib.sha256(data).hexdigest()
    layer = Layer(digest=f"sha256:{digest}", size=len(data))
    with open(os.path.join(image_dir, layer.archive_name), 'wb') as f:
        f.write(data)
    return layer


def write_image(image_dir, layer_entries):
    """Write layers plus manifest.json into image_dir and return the manifest"""
    layers = [write_layer(image_dir, entries) for entries in layer_entries]
    manifest = ImageManifest(layers=layers, image_dir=image_dir)
    write_manifest(manifest)
    return manifest


def make_manifest(digests, image_dir=''):
    return ImageManifest(layers=[Layer(digest=d) for d in digests], image_dir=image_dir)


def build_docker_archive(path, layer_entries, repo_tags=('demo:1.0',), compress_layers=False):
    """Write a `docker save` style archive with one image"""
    config = json.dumps({'architecture': 'amd64', 'os': 'linux'}).encode()
    config_name = hashlib.sha256(config).hexdigest() + '.json'
    members = [(config_name, config)]
    layer_names = []
    for i, entries in enumerate(layer_entries):
        name = f"layer{i}/layer.tar"
        members.append((name, build_tar(entries, compress=compress_layers)))
        layer_names.append(name)
    manifest = [{'Config': config_name, 'RepoTags': list(repo_tags), 'Layers': layer_names}]
    members.append(('manifest.json', json.dumps(manifest).encode()))

    with tarfile.open(path, 'w') as tar:
        for name, data in members:
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return path


ELF_HEADER = '<HHIQQQIHHHHHH'
SECTION_HEADER = '<IIQQQQIIQQ'
PROGRAM_HEADER = '<IIQQQQQQ'


def build_elf(interpreter=None, e_type=3, machine=0x3E, use_sections=True):
    """
    Build a minimal little-endian 64-bit ELF image

    With use_sections the interpreter lives in a .interp section; otherwise only a
    PT_INTERP program header points at it.
    """
    ident = b'\x7fELF' + bytes([2, 1, 1]) + b'\x00' * 9
    body = b''
    offset = 64
    interp_offset = offset
    interp = b''
    if interpreter is not None:
        interp = interpreter.encode() + b'\x00'
        body += interp
        offset += len(interp)

    if not use_sections:
        phoff = 64 + len(body)
        phnum = 1 if interpreter is not None else 0
        phdrs = b''
        if phnum:
            phdrs = struct.pack(PROGRAM_HEADER, 3, 4, interp_offset, 0, 0, len(interp), len(interp), 1)
        header = struct.pack(ELF_HEADER, e_type, machine, 1, 0, phoff, 0, 0, 64, 56, phnum, 64, 0, 0)
        return ident + header + body + phdrs

    if interpreter is not None:
        shstrtab = b'\x00.interp\x00.shstrtab\x00'
        names = {'interp': 1, 'shstrtab': 9}
    else:
        shstrtab = b'\x00.shstrtab\x00'
        names = {'shstrtab': 1}
    shstrtab_offset = offset
    body += shstrtab
    offset += len(shstrtab)
    padding = (8 - offset % 8) % 8
    body += b'\x00' * padding
    shoff = offset + padding

    sections = [struct.pack(SECTION_HEADER, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0)]
    if interpreter is not None:
        sections.append(struct.pack(SECTION_HEADER, names['interp'], 1, 2, 0, interp_offset, len(interp), 0, 0, 1, 0))
    sections.append(struct.pack(SECTION_HEADER, names['shstrtab'], 3, 0, 0, shstrtab_offset, len(shstrtab), 0, 0, 1, 0))

    header = struct.pack(ELF_HEADER, e_type, machine, 1, 0, 0, shoff, 0, 64, 0, 0, 64,
                         len(sections), len(sections) - 1)
    return ident + header + body + b''.join(sections)
