#!/usr/bin/env python3
import os
import re
from dataclasses import dataclass, replace
from pathlib import Path

from rk_errors import FormatError

SIDECAR_NAME = "partition-metadata.txt"
RKAF_META_NAME = "rkaf_header.meta"
RKFW_META_NAME = "rkfw.meta"
PARAMETER_NAME = "parameter.txt"
METADATA_FILES = (SIDECAR_NAME, RKAF_META_NAME, RKFW_META_NAME)

# Paths that describe the image itself rather than a payload.
PSEUDO_PATHS = ("SELF", "RESERVED")

NO_FLASH_ADDR = 0xFFFFFFFF

@dataclass(frozen=True)
class PartitionEntry:
    name: str
    path: str
    offset: int
    size: int
    flash_size: int = 0
    flash_offset: int = NO_FLASH_ADDR
    padded_size: int = 0

    @property
    def end(self):
        return self.offset + self.size

    @property
    def is_pseudo(self):
        return self.path in PSEUDO_PATHS

    def resized(self, size):
        if size == self.size:
            return self
        return replace(self, size=size, padded_size=padded_sectors(size))

def padded_sectors(size):
    return (size + 2047) // 2048

def format_sidecar(entries):
    lines = ["# name,path,flash_size,flash_offset,offset,padded_size,size"]
    for e in entries:
        lines.append(f"{e.name},{e.path},0x{e.flash_size:08x},0x{e.flash_offset:08x},"
                     f"0x{e.offset:08x},0x{e.padded_size:08x},0x{e.size:08x}")
    return "\n".join(lines) + "\n"

def parse_sidecar(text):
    entries = []
    for lineno, line in enumerate(text.splitlines(), 1):
        line = line.strip()
        if not line or line.startswith('#'):
            continue

        fields = line.split(',')
        if len(fields) != 7:
            raise FormatError(SIDECAR_NAME, f"line {lineno}: expected 7 fields, got {len(fields)}")

        name, path = fields[0], fields[1]
        try:
            flash_size, flash_offset, offset, padded_size, size = (int(f, 0) for f in fields[2:])
        except ValueError:
            raise FormatError(SIDECAR_NAME, f"line {lineno}: bad number") from None

        entries.append(PartitionEntry(name, path, offset, size, flash_size, flash_offset, padded_size))
    return entries

def write_sidecar(dstdir, entries):
    path = os.path.join(dstdir, SIDECAR_NAME)
    with open(path, 'w') as fp:
        fp.write(format_sidecar(entries))
    return path

def read_sidecar(srcdir):
    path = os.path.join(srcdir, SIDECAR_NAME)
    if not os.path.exists(path):
        return None
    with open(path, 'r') as fp:
        return parse_sidecar(fp.read())

def read_meta(path):
    """key=value metadata file as written next to unpacked images."""
    if not os.path.exists(path):
        return None
    metadata = {}
    with open(path, 'r') as fp:
        for line in fp:
            line = line.strip()
            if not line or line.startswith('#') or '=' not in line:
                continue
            key, val = line.split('=', 1)
            metadata[key.strip()] = val.strip()
    return metadata

def write_meta(path, metadata):
    with open(path, 'w') as fp:
        for key, val in metadata.items():
            fp.write(f"{key}={val}\n")

def list_partition_files(srcdir):
    """Relative posix paths of packable files under srcdir, sorted."""
    root = Path(srcdir)
    files = []
    for dirpath, _, filenames in os.walk(root):
        for f in filenames:
            rel = (Path(dirpath) / f).relative_to(root).as_posix()
            if rel in METADATA_FILES:
                continue
            files.append(rel)
    return sorted(files)

_MTDPART = re.compile(r'(?P<size>-|(?:0x)?[0-9a-fA-F]+)@(?P<start>(?:0x)?[0-9a-fA-F]+)\((?P<name>[^):]+)(?::[^)]*)?\)')

def parse_partitions(mtdparts):
    """Partitions of one mtdparts device list, in listed order.

    A "-" size means the partition runs to the end of the device.
    """
    partitions = []
    for spec in mtdparts.split(','):
        match = _MTDPART.match(spec.strip())
        if not match:
            continue
        size = match['size']
        partitions.append({
            'name': match['name'],
            'start': int(match['start'], 16),
            'size': 0xFFFFFFFF if size == '-' else int(size, 16),
        })
    return partitions

def parse_parameter(fname):
    image = {
        'version': None,
        'machine_id': None,
        'partitions': []
    }

    with open(fname, 'r', errors='replace') as fp:
        for line in fp:
            line = line.strip()
            if not line or line.startswith('#') or ':' not in line:
                continue

            key, value = line.split(':', 1)
            key = key.strip()
            value = value.strip()

            if key == 'FIRMWARE_VER':
                match = re.match(r'(\d+)\.(\d+)(?:\.(\d+))?', value)
                if match:
                    a, b, c = match.groups()
                    image['version'] = (int(a) << 24) + (int(b) << 16) + int(c or 0)
            elif key == 'MACHINE_ID':
                image['machine_id'] = value
            elif key == 'CMDLINE':
                for param in value.split():
                    if '=' not in param:
                        continue
                    param_key, param_value = param.split('=', 1)
                    if param_key == 'mtdparts':
                        parts = param_value.split(':', 1)
                        if len(parts) == 2:
                            image['partitions'] = parse_partitions(parts[1])

    return image

PARAMETER_PARTITION = {'name': 'parameter', 'start': 0, 'size': 0x4000}

def find_partition_byname(partitions, name):
    # the parameter block is not listed in mtdparts; later entries win
    if name == PARAMETER_PARTITION['name']:
        return PARAMETER_PARTITION
    return next((p for p in reversed(partitions) if p['name'] == name), None)
