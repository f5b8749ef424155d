#!/usr/bin/env python3
"""
Minimal ELF reader
Only what relocation needs: file type, machine and the requested interpreter.
Headers are read with struct; no external dependencies.
"""

import struct
from dataclasses import dataclass, field

from .errors import IOFailure, ParseError

ELF_MAGIC = b"\x7fELF"
EI_NIDENT = 16
EHDR_MAX_SIZE = 64

ET_EXEC = 2
ET_DYN = 3

PT_INTERP = 3
SHT_NOBITS = 8

MACHINE_MAP = {
    0x03: 'i386',
    0x28: 'arm',
    0x3E: 'x86_64',
    0xB7: 'aarch64',
    0xF3: 'riscv',
    0x15: 'ppc64',
    0x16: 's390x',
}

# (ehdr after e_ident, section header, program header) per ELF class
_LAYOUTS = {
    1: ('HHIIIIIHHHHHH', 'IIIIIIIIII', 'IIIIIIII'),
    2: ('HHIQQQIHHHHHH', 'IIQQQQIIQQ', 'IIQQQQQQ'),
}


@dataclass
class ElfHeader:
    elf_class: int
    endian: str
    e_type: int
    e_machine: int
    e_phoff: int
    e_shoff: int
    e_phentsize: int
    e_phnum: int
    e_shentsize: int
    e_shnum: int
    e_shstrndx: int

    @property
    def machine(self):
        return MACHINE_MAP.get(self.e_machine, hex(self.e_machine))

    @property
    def is_executable(self):
        return self.e_type in (ET_EXEC, ET_DYN)


@dataclass
class ELFBinaryEntry:
    path: str
    machine: str
    interpreter: str = None
    dependencies: set = field(default_factory=set)

    @property
    def is_statically_linked(self):
        return not self.interpreter


def _unpack(fmt, data, offset, endian, what):
    fmt = endian + fmt
    size = struct.calcsize(fmt)
    if offset < 0 or offset + size > len(data):
        raise ParseError(f"Truncated ELF {what}")
    return struct.unpack_from(fmt, data, offset)


def _read_at(f, offset, size, what):
    if offset < 0 or size < 0:
        raise ParseError(f"Invalid ELF {what} offset")
    f.seek(offset)
    data = f.read(size)
    if len(data) < size:
        raise ParseError(f"Truncated ELF {what}")
    return data


def parse_header(data):
    """Parse an ELF header from the start of a file; None if data is not ELF"""
    if len(data) < EI_NIDENT or not data.startswith(ELF_MAGIC):
        return None
    ei_class = data[4]
    ei_data = data[5]
    if ei_class not in _LAYOUTS or ei_data not in (1, 2):
        raise ParseError(f"Unsupported ELF class/encoding: {ei_class}/{ei_data}")
    endian = '<' if ei_data == 1 else '>'
    values = _unpack(_LAYOUTS[ei_class][0], data, EI_NIDENT, endian, 'header')
    (e_type, e_machine, _version, _entry, e_phoff, e_shoff, _flags, _ehsize,
     e_phentsize, e_phnum, e_shentsize, e_shnum, e_shstrndx) = values
    return ElfHeader(ei_class, endian, e_type, e_machine, e_phoff, e_shoff,
                     e_phentsize, e_phnum, e_shentsize, e_shnum, e_shstrndx)


def _c_string(blob):
    return blob.split(b'\x00', 1)[0].decode('utf-8', errors='replace')


def _sections(header, f):
    fmt = _LAYOUTS[header.elf_class][1]
    table = _read_at(f, header.e_shoff, header.e_shnum * header.e_shentsize, 'section header table')
    sections = []
    for i in range(header.e_shnum):
        values = _unpack(fmt, table, i * header.e_shentsize, header.endian, 'section header')
        sh_name, sh_type = values[0], values[1]
        sh_offset, sh_size = values[4], values[5]
        sections.append((sh_name, sh_type, sh_offset, sh_size))
    return sections


def _interp_from_sections(header, f):
    sections = _sections(header, f)
    if header.e_shstrndx >= len(sections):
        raise ParseError("ELF section name table index out of range")
    _, _, strtab_offset, strtab_size = sections[header.e_shstrndx]
    strtab = _read_at(f, strtab_offset, strtab_size, 'section name table')
    for sh_name, sh_type, sh_offset, sh_size in sections:
        if _c_string(strtab[sh_name:]) != '.interp':
            continue
        if sh_type == SHT_NOBITS or sh_size == 0:
            return ''
        return _c_string(_read_at(f, sh_offset, sh_size, '.interp section'))
    return None


def _interp_from_segments(header, f):
    fmt = _LAYOUTS[header.elf_class][2]
    table = _read_at(f, header.e_phoff, header.e_phnum * header.e_phentsize, 'program header table')
    for i in range(header.e_phnum):
        values = _unpack(fmt, table, i * header.e_phentsize, header.endian, 'program header')
        p_type = values[0]
        if p_type != PT_INTERP:
            continue
        if header.elf_class == 1:
            p_offset, p_filesz = values[1], values[4]
        else:
            p_offset, p_filesz = values[2], values[5]
        f.seek(p_offset)
        return _c_string(f.read(p_filesz))
    return None


def read_interpreter(header, f):
    """
    Return the interpreter path a binary requests

    Only the header tables and the interpreter string are read from f.

    Returns:
        str: The path, '' when the .interp section is empty,
             or None when the binary has no interpreter at all
    """
    if header.e_shnum and header.e_shoff:
        return _interp_from_sections(header, f)
    return _interp_from_segments(header, f)


def classify(path):
    """
    Classify a regular file

    Returns:
        ELFBinaryEntry for executables and shared objects, None for anything else

    Raises:
        IOFailure: If the file cannot be read
        ParseError: If the file claims to be ELF but its headers are malformed
    """
    try:
        with open(path, 'rb') as f:
            data = f.read(EHDR_MAX_SIZE)
            if not data.startswith(ELF_MAGIC):
                return None
            try:
                header = parse_header(data)
                if header is None or not header.is_executable:
                    return None
                interpreter = read_interpreter(header, f)
            except ParseError as e:
                raise ParseError(f"{path}: {e}") from e
    except OSError as e:
        raise IOFailure(f"Failed to read {path}: {e}") from e
    return ELFBinaryEntry(path=path, machine=header.machine, interpreter=interpreter)
