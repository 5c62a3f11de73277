#!/usr/bin/env python3
import io
import os
import re
import struct
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from rk_chips import name_for_code
from rk_digest import DigestWriter, IntegrityReporter, PackSummary
from rk_errors import FormatError, PackError, UnknownChip
from rk_log import LOGD, LOGI, LOGW
from rk_partitions import RKFW_META_NAME, write_meta
from rkaf_image import HEADER_SIZE as RKAF_HEADER_SIZE, RKAF_MAGIC, UpdateHeader

RKFW_MAGIC = b'RKFW'
BOOT_FILENAME = "BOOT"
UPDATE_FILENAME = "embedded-update.img"
MD5_TRAILER_SIZE = 32
MIN_LOADER_SIZE = 16
MIN_IMAGE_SIZE = 136

_HEX_DIGEST = re.compile(rb'^[0-9a-fA-F]{32}$')
EXTRA_FIELDS = ('head_len', 'unknown1', 'unknown2', 'system_fstype', 'backup_endpos', 'reserved', 'md5_trailer')
RESERVED_SIZE = 45

def format_version(version):
    return f"{version >> 24}.{(version >> 16) & 0xFF}.{version & 0xFFFF}"

def parse_version(text):
    match = re.fullmatch(r'(\d+)\.(\d+)(?:\.(\d+))?', text.strip())
    if not match:
        raise ValueError(f"bad version {text!r}, expected major.minor.patch")
    a, b, c = (int(g or 0) for g in match.groups())
    if a > 0xFF or b > 0xFF or c > 0xFFFF:
        raise ValueError(f"version {text!r} out of range")
    return (a << 24) + (b << 16) + c

class RKFWHeader:
    FORMAT = '<4sHIIHBBBBBIIIIIIIII45s'
    SIZE = 102

    def __init__(self):
        self.head_code = RKFW_MAGIC
        self.head_len = self.SIZE
        self.version = 0
        self.code = 0x01030000
        self.year = 1970
        self.month = 1
        self.day = 1
        self.hour = 0
        self.minute = 0
        self.second = 0
        self.chip = 0x50
        self.loader_offset = self.SIZE
        self.loader_length = 0
        self.image_offset = 0
        self.image_length = 0
        self.unknown1 = 0
        self.unknown2 = 1
        self.system_fstype = 0
        self.backup_endpos = 0
        self.reserved = bytes(RESERVED_SIZE)
        self.md5_trailer = False

    @property
    def timestamp(self):
        dt = datetime(self.year, self.month, self.day, self.hour, self.minute, self.second,
                      tzinfo=timezone.utc)
        return int(dt.timestamp())

    @timestamp.setter
    def timestamp(self, value):
        dt = datetime.fromtimestamp(value, timezone.utc)
        self.year = dt.year
        self.month = dt.month
        self.day = dt.day
        self.hour = dt.hour
        self.minute = dt.minute
        self.second = dt.second

    @property
    def build_time(self):
        return f"{self.year:04d}-{self.month:02d}-{self.day:02d} {self.hour:02d}:{self.minute:02d}:{self.second:02d}"

    @property
    def chip_family(self):
        try:
            return name_for_code(self.chip)
        except UnknownChip:
            return None

    @property
    def end(self):
        return self.image_offset + self.image_length

    def pack(self):
        return struct.pack(self.FORMAT,
            self.head_code,
            self.head_len,
            self.version,
            self.code,
            self.year,
            self.month,
            self.day,
            self.hour,
            self.minute,
            self.second,
            self.chip,
            self.loader_offset,
            self.loader_length,
            self.image_offset,
            self.image_length,
            self.unknown1,
            self.unknown2,
            self.system_fstype,
            self.backup_endpos,
            self.reserved
        )

    @classmethod
    def unpack(cls, data):
        if len(data) < len(RKFW_MAGIC) or data[:4] != RKFW_MAGIC:
            raise FormatError("signature", f"invalid head code: {bytes(data[:4])!r}")
        if len(data) < cls.SIZE:
            raise FormatError("header", f"truncated input: {len(data)} bytes, header needs {cls.SIZE}")

        header = cls()
        (header.head_code, header.head_len, header.version, header.code,
         header.year, header.month, header.day, header.hour, header.minute, header.second,
         header.chip, header.loader_offset, header.loader_length,
         header.image_offset, header.image_length,
         header.unknown1, header.unknown2, header.system_fstype, header.backup_endpos,
         header.reserved) = struct.unpack_from(cls.FORMAT, data, 0)

        try:
            header.timestamp
        except ValueError:
            raise FormatError("build_time", f"invalid build time {header.build_time}") from None
        return header

    def metadata(self):
        return {
            'chip': f"0x{self.chip:08x}",
            'code': f"0x{self.code:08x}",
            'build_time': self.build_time,
            'timestamp': self.timestamp,
            'version': format_version(self.version),
            'unknown1': self.unknown1,
            'unknown2': self.unknown2,
            'system_fstype': self.system_fstype,
            'backup_endpos': self.backup_endpos,
            'head_len': self.head_len,
            'reserved': self.reserved.hex(),
            'md5': 1 if self.md5_trailer else 0,
        }

def decode_rkfw(data):
    """Decode the wrapper header and check the two segment descriptors.

    Boot and update segments must follow the header back to back and
    reach the end of input, optionally followed by a 32 byte ASCII MD5
    trailer. A wrong trailer digest is only reported.
    """
    header = RKFWHeader.unpack(data)
    total = len(data)

    if header.loader_offset != header.SIZE:
        raise FormatError("loader_offset", f"boot segment at {header.loader_offset} does not follow the {header.SIZE} byte header")
    if header.image_offset != header.loader_offset + header.loader_length:
        raise FormatError("image_offset",
                          f"update segment at {header.image_offset} does not follow boot segment "
                          f"{header.loader_offset}+{header.loader_length}")
    if header.end > total:
        raise FormatError("image_length", f"segments end at {header.end}, input is {total} bytes")

    tail = data[header.end:]
    if len(tail) == MD5_TRAILER_SIZE and _HEX_DIGEST.match(bytes(tail)):
        header.md5_trailer = True
        reporter = IntegrityReporter()
        reporter.update(data[:header.end])
        if reporter.finalize() != bytes(tail).decode('ascii').lower():
            LOGW("md5 trailer does not match image contents")
    elif tail:
        raise FormatError("image_length", f"{len(tail)} unexplained bytes after update segment")

    return header

def extract_segments(data, header):
    view = memoryview(data)
    return {
        'boot': view[header.loader_offset:header.loader_offset + header.loader_length],
        'update': view[header.image_offset:header.end],
    }

def backup_endpos(update_head):
    """End of the `backup` partition in 2048 byte blocks, 0 without one."""
    try:
        rkaf_header = UpdateHeader.unpack(update_head)
    except FormatError as e:
        LOGW(f"Could not parse RKAF header: {e}")
        return 0
    for part in rkaf_header.parts:
        if part.name == 'backup':
            return (part.flash_offset + part.flash_size) // 0x800
    return 0

def build_header(chip, version, timestamp, code, boot_size, update_size, update_head=b'', **extra):
    if boot_size < MIN_LOADER_SIZE:
        raise PackError(f"invalid loader: {boot_size} bytes")
    if update_size < MIN_IMAGE_SIZE:
        raise PackError(f"invalid rom: {update_size} bytes")

    header = RKFWHeader()
    header.chip = chip
    header.version = version
    header.code = code
    try:
        header.timestamp = timestamp
    except (ValueError, OverflowError, OSError):
        raise PackError(f"timestamp {timestamp} out of range") from None
    header.loader_length = boot_size
    header.image_offset = header.loader_offset + boot_size
    header.image_length = update_size
    if header.end > 0xFFFFFFFF:
        raise PackError(f"image of {header.end} bytes does not fit 32 bit offsets")

    if 'backup_endpos' not in extra:
        header.backup_endpos = backup_endpos(update_head)
    for key, val in extra.items():
        if key not in EXTRA_FIELDS:
            raise TypeError(f"unknown RKFW header field {key}")
        setattr(header, key, val)

    for name in ('version', 'code', 'chip', 'unknown1', 'unknown2', 'system_fstype', 'backup_endpos'):
        value = getattr(header, name)
        if not 0 <= value <= 0xFFFFFFFF:
            raise PackError(f"{name} field {value:#x} does not fit 32 bits")
    if not 0 <= header.head_len <= 0xFFFF:
        raise PackError(f"head_len {header.head_len:#x} does not fit 16 bits")
    if len(header.reserved) != RESERVED_SIZE:
        raise PackError(f"reserved field must be {RESERVED_SIZE} bytes, got {len(header.reserved)}")
    return header

def write_rom(writer, header, emit_boot, emit_update):
    writer.write(header.pack())
    emit_boot(writer)
    emit_update(writer)
    if header.md5_trailer:
        LOGD("append md5sum...")
        writer.write(writer.reporter.finalize().encode('ascii'))

def encode_rkfw(chip, version, timestamp, code, boot, update, **extra):
    header = build_header(chip, version, timestamp, code, len(boot), len(update),
                          update[:RKAF_HEADER_SIZE], **extra)
    out = io.BytesIO()
    write_rom(DigestWriter(out), header, lambda w: w.write(boot), lambda w: w.write(update))
    return out.getvalue()

@dataclass
class RkfwInfo:
    version: str
    code: int
    timestamp: int
    chip_family: str
    chip_code: int
    boot_offset: int
    boot_size: int
    update_offset: int
    update_size: int
    md5_trailer: bool = False

def unpack_rom(data, dstdir):
    header = decode_rkfw(data)
    segments = extract_segments(data, header)

    LOGI(f"version: {format_version(header.version)}")
    LOGI(f"code field: 0x{header.code:08x}")
    LOGI(f"date: {header.build_time} (Unix timestamp: {header.timestamp})")
    family = header.chip_family
    if family is None:
        LOGW(f"You got a brand new chip (0x{header.chip:x}), congratulations!!!")
    LOGI(f"family: {family or 'unknown'}")

    if bytes(segments['update'][:4]) != RKAF_MAGIC:
        LOGW("update segment is not an RKAF image")

    Path(dstdir).mkdir(parents=True, exist_ok=True)
    for filename, key, offset in ((BOOT_FILENAME, 'boot', header.loader_offset),
                                  (UPDATE_FILENAME, 'update', header.image_offset)):
        chunk = segments[key]
        LOGD(f"{offset:08x}-{offset + len(chunk):08x} {filename:26} (size: {len(chunk)})")
        with open(os.path.join(dstdir, filename), 'wb') as out_fp:
            out_fp.write(chunk)

    write_meta(os.path.join(dstdir, RKFW_META_NAME), header.metadata())

    return RkfwInfo(format_version(header.version), header.code, header.timestamp,
                    family or "unknown", header.chip,
                    header.loader_offset, header.loader_length,
                    header.image_offset, header.image_length, header.md5_trailer)

def plan_rom(srcdir, chip, version, timestamp, code, **extra):
    loader_filename = os.path.join(srcdir, BOOT_FILENAME)
    image_filename = os.path.join(srcdir, UPDATE_FILENAME)
    for path in (loader_filename, image_filename):
        if not os.path.isfile(path):
            raise PackError(f"missing segment file: {path}")

    with open(image_filename, 'rb') as fp:
        update_head = fp.read(RKAF_HEADER_SIZE)

    return build_header(chip, version, timestamp, code,
                        os.path.getsize(loader_filename), os.path.getsize(image_filename),
                        update_head, **extra)

def pack_rom(srcdir, outfile, chip, version, timestamp, code, **extra):
    header = plan_rom(srcdir, chip, version, timestamp, code, **extra)

    Path(outfile).parent.mkdir(parents=True, exist_ok=True)
    with open(outfile, 'wb') as fp:
        writer = DigestWriter(fp)
        write_rom(writer, header,
                  lambda w: w.copy_from(os.path.join(srcdir, BOOT_FILENAME), header.loader_length),
                  lambda w: w.copy_from(os.path.join(srcdir, UPDATE_FILENAME), header.image_length))

    return PackSummary(str(outfile), writer.tell(), writer.reporter.finalize())
