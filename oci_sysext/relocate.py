#!/usr/bin/env python3
"""
Binary relocator
Repoints the loader and library search path of dynamically linked ELF files and
copies their shared library dependencies into the rootfs tree.

The pass runs in three phases: scan the tree (classification and dependency
listing), plan the patch/copy actions with a pure function, then apply them.
"""

import os
import shutil
import logging
from dataclasses import dataclass

from . import elf
from .config import DEFAULT_INTERPRETERS
from .errors import InvalidArgumentError, IOFailure, NotFoundError, SysextError
from .tools import CommandRunner, OperationsLog

logger = logging.getLogger(__name__)

ACTION_PATCH = 'patch'
ACTION_COPY = 'copy'
ACTION_RPATH = 'rpath'


@dataclass
class RelocationAction:
    kind: str
    path: str
    source: str = None
    interpreter: str = None
    rpath: str = None


class PatchelfPatcher:
    """Binary patcher backed by patchelf"""

    def __init__(self, runner=None):
        self.runner = runner or CommandRunner()

    def patch(self, path, interpreter=None, rpath=None):
        cmd = ['patchelf']
        if interpreter:
            cmd.extend(['--set-interpreter', interpreter])
        if rpath:
            cmd.extend(['--set-rpath', rpath])
        if len(cmd) == 1:
            return
        cmd.append(path)
        self.runner.run(cmd)


def parse_ldd_output(output):
    """
    Parse ldd output

    Only 'name => /path (address)' lines name a library that must be shipped;
    the vdso and the loader line carry no '=>'.

    Returns:
        tuple: (resolved library paths, names ldd could not find)
    """
    libraries = []
    missing = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 3 or parts[1] != '=>':
            continue
        if parts[2] == 'not':
            missing.append(parts[0])
        elif parts[2].startswith('/'):
            libraries.append(parts[2])
    return libraries, missing


class LddLister:
    """Dependency lister backed by ldd"""

    def __init__(self, runner=None):
        self.runner = runner or CommandRunner()

    def list_dependencies(self, path):
        libraries, missing = parse_ldd_output(self.runner.run(['ldd', path], record=False))
        if missing:
            raise NotFoundError(f"Shared libraries not found for {path}: {', '.join(missing)}")
        return libraries


def iter_regular_files(rootfs_dir):
    """Yield every regular file in the tree, never following symlinks"""

    def on_error(e):
        raise IOFailure(f"Error accessing path {e.filename}: {e}") from e

    for dirpath, dirnames, filenames in os.walk(rootfs_dir, onerror=on_error):
        dirnames.sort()
        for name in sorted(filenames):
            path = os.path.join(dirpath, name)
            if os.path.isfile(path) and not os.path.islink(path):
                yield path


def scan_binaries(rootfs_dir, lister):
    """Classify every regular file; dynamic binaries get their dependency list"""
    entries = []
    for path in iter_regular_files(rootfs_dir):
        entry = elf.classify(path)
        if entry is None:
            continue
        if entry.is_statically_linked:
            logger.info(f"Skipping patching for statically linked binary: {path}")
        else:
            try:
                entry.dependencies = set(lister.list_dependencies(path))
            except SysextError:
                logger.error(f"Failed to list dependencies for {path}")
                raise
        entries.append(entry)
    return entries


def present_libraries(rootfs_dir, lib_dir):
    """Names already shipped in the tree's library directory"""
    directory = os.path.join(rootfs_dir, lib_dir)
    if not os.path.isdir(directory):
        return set()
    return set(os.listdir(directory))


def plan_relocation(entries, rootfs_dir, lib_dir, interpreters=None, new_root=None, present=frozenset()):
    """
    Build the list of actions for a set of classified binaries

    Args:
        entries: ELFBinaryEntry list from scan_binaries
        rootfs_dir: Tree being relocated
        lib_dir: Library directory, relative to the tree
        interpreters: Machine name to loader path
        new_root: Root the rpath is computed against; defaults to rootfs_dir
        present: Library names already inside lib_dir

    Returns:
        list: RelocationAction objects in execution order
    """
    interpreters = interpreters or DEFAULT_INTERPRETERS
    rpath = os.path.join(new_root or rootfs_dir, lib_dir)
    target_dir = os.path.join(rootfs_dir, lib_dir)

    actions = []
    copied = set()
    repathed = set()
    for entry in entries:
        if entry.is_statically_linked:
            continue
        interpreter = interpreters.get(entry.machine)
        if not interpreter:
            raise InvalidArgumentError(f"No loader known for {entry.machine} binary {entry.path}")
        actions.append(RelocationAction(ACTION_PATCH, entry.path, interpreter=interpreter, rpath=rpath))

        for library in sorted(entry.dependencies):
            name = os.path.basename(library)
            destination = os.path.join(target_dir, name)
            if name not in present and destination not in copied:
                actions.append(RelocationAction(ACTION_COPY, destination, source=library))
                copied.add(destination)
            if destination not in repathed:
                actions.append(RelocationAction(ACTION_RPATH, destination, rpath=rpath))
                repathed.add(destination)
    return actions


def copy_library(source, destination):
    """Copy a library preserving its permission bits"""
    os.makedirs(os.path.dirname(destination), exist_ok=True)
    shutil.copyfile(source, destination)
    shutil.copymode(source, destination)


def apply_relocation(actions, patcher, operations_log=None):
    """Execute planned actions in order; the first failure aborts the pass"""
    operations_log = operations_log or OperationsLog()
    for action in actions:
        try:
            if action.kind == ACTION_PATCH:
                logger.info(f"Patching binary: {action.path}")
                patcher.patch(action.path, interpreter=action.interpreter, rpath=action.rpath)
            elif action.kind == ACTION_COPY:
                logger.info(f"Library not found, copying: {action.source} to {action.path}")
                copy_library(action.source, action.path)
                operations_log.record('copy', action.source, action.path)
            elif action.kind == ACTION_RPATH:
                patcher.patch(action.path, rpath=action.rpath)
            else:
                raise InvalidArgumentError(f"Unknown relocation action: {action.kind}")
        except OSError as e:
            raise IOFailure(f"Failed to relocate {action.path}: {e}") from e
        except SysextError:
            logger.error(f"Failed to relocate {action.path}")
            raise


def relocate_binaries(rootfs_dir, lib_dir='usr/lib', interpreters=None, new_root=None,
                      patcher=None, lister=None, operations_log=None):
    """Relocate every dynamically linked binary in the tree; returns the applied actions"""
    logger.info(f"Starting to relocate and patch binaries in {rootfs_dir}")
    patcher = patcher or PatchelfPatcher()
    lister = lister or LddLister()

    entries = scan_binaries(rootfs_dir, lister)
    actions = plan_relocation(
        entries, rootfs_dir, lib_dir,
        interpreters=interpreters,
        new_root=new_root,
        present=present_libraries(rootfs_dir, lib_dir),
    )
    apply_relocation(actions, patcher, operations_log)

    patched = sum(1 for a in actions if a.kind == ACTION_PATCH)
    logger.info(f"Successfully relocated and patched {patched} binaries in {rootfs_dir}")
    return actions
