#!/usr/bin/env python3
import io
import os
import struct
from dataclasses import dataclass, field, replace
from pathlib import Path, PurePosixPath

from rk_digest import DigestWriter, PackSummary, rkcrc
from rk_errors import FormatError, PackError
from rk_log import LOGD, LOGI, LOGW
from rk_partitions import (
    PARAMETER_NAME, RKAF_META_NAME, NO_FLASH_ADDR, PartitionEntry,
    find_partition_byname, list_partition_files, padded_sectors,
    parse_parameter, read_meta, read_sidecar, write_meta, write_sidecar,
)

RKAF_MAGIC = b'RKAF'
HEADER_FORMAT = '<4sI34s30s56sIII'
HEADER_BASE_SIZE = struct.calcsize(HEADER_FORMAT)
PART_FORMAT = '<32s60sIIIII'
PART_SIZE = struct.calcsize(PART_FORMAT)
MAX_PARTS = 16
HEADER_SIZE = 2048
CRC_SIZE = 4

MODEL_LEN = 34
ID_LEN = 30
MANUFACTURER_LEN = 56
NAME_LEN = 32
PATH_LEN = 60

def _cstr(raw):
    return raw.split(b'\x00', 1)[0].decode('utf-8', errors='ignore')

class UpdateHeader:
    def __init__(self, model='', manufacturer='', parts=None, length=HEADER_SIZE,
                 machine_id='', version=0, unknown1=0, crc=True, tail_padding=0):
        self.magic = RKAF_MAGIC
        self.length = length
        self.model = model
        self.id = machine_id
        self.manufacturer = manufacturer
        self.unknown1 = unknown1
        self.version = version
        self.parts = list(parts or [])
        self.crc = crc
        self.tail_padding = tail_padding

    @property
    def num_parts(self):
        return len(self.parts)

    def pack(self):
        header = bytearray(HEADER_SIZE)
        struct.pack_into(HEADER_FORMAT, header, 0,
            self.magic,
            self.length,
            self.model.encode('utf-8'),
            self.id.encode('utf-8'),
            self.manufacturer.encode('utf-8'),
            self.unknown1,
            self.version,
            len(self.parts))

        for i, part in enumerate(self.parts):
            struct.pack_into(PART_FORMAT, header, HEADER_BASE_SIZE + i * PART_SIZE,
                part.name.encode('utf-8'),
                part.path.encode('utf-8'),
                part.flash_size,
                part.offset,
                part.flash_offset,
                part.padded_size,
                part.size)
        return bytes(header)

    def metadata(self):
        return {
            'model': self.model,
            'id': self.id,
            'manufacturer': self.manufacturer,
            'version': self.version,
            'unknown1': self.unknown1,
            'length': self.length,
            'crc': 1 if self.crc else 0,
            'tail_padding': self.tail_padding,
        }

    @staticmethod
    def unpack(data):
        if len(data) < len(RKAF_MAGIC) or data[:4] != RKAF_MAGIC:
            raise FormatError("signature", f"invalid header magic {bytes(data[:4])!r}")
        if len(data) < HEADER_SIZE:
            raise FormatError("header", f"truncated input: {len(data)} bytes, header needs {HEADER_SIZE}")

        magic, length, model, machine_id, manufacturer, unknown1, version, num_parts = \
            struct.unpack_from(HEADER_FORMAT, data, 0)

        if num_parts > MAX_PARTS:
            raise FormatError("num_parts", f"{num_parts} partitions, at most {MAX_PARTS} fit the header")

        parts = []
        for i in range(num_parts):
            name, path, flash_size, pos, flash_offset, padded_size, size = \
                struct.unpack_from(PART_FORMAT, data, HEADER_BASE_SIZE + i * PART_SIZE)
            parts.append(PartitionEntry(_cstr(name), _cstr(path), pos, size,
                                        flash_size, flash_offset, padded_size))

        return UpdateHeader(_cstr(model), _cstr(manufacturer), parts, length,
                            _cstr(machine_id), version, unknown1)

def decode_rkaf(data):
    """Decode an RKAF image held in memory.

    Validates the declared length against the input: the image may be
    followed by the 4 byte RKCRC trailer and zero padding, nothing else.
    A wrong CRC is only reported.
    Every payload entry must lie inside the input.
    """
    header = UpdateHeader.unpack(data)
    total = len(data)

    if header.length < HEADER_SIZE:
        raise FormatError("length", f"declared length {header.length} is smaller than the header")
    if total < header.length:
        raise FormatError("length", f"truncated input: declared {header.length}, got {total} bytes")

    extra = total - header.length
    if extra == 0:
        LOGW("no crc trailer after declared length, cannot check CRC")
        header.crc = False
    elif extra < CRC_SIZE:
        raise FormatError("length", f"declared length {header.length} leaves {extra} unexplained trailing bytes")
    else:
        expected, = struct.unpack_from('<I', data, header.length)
        calculated = rkcrc(bytes(data[:header.length]))
        if calculated != expected:
            LOGW(f"crc mismatch: calculated 0x{calculated:08x}, expected 0x{expected:08x}")
        tail = data[header.length + CRC_SIZE:]
        if any(tail):
            raise FormatError("length", f"declared length {header.length} disagrees with input length {total}")
        header.tail_padding = len(tail)

    for i, part in enumerate(header.parts):
        if part.is_pseudo:
            continue
        if part.end > total:
            raise FormatError(f"part[{i}] {part.name}",
                              f"offset 0x{part.offset:08x} + size 0x{part.size:08x} exceeds input length {total}")

    return header

def _safe_relpath(path):
    p = PurePosixPath(path)
    if not path or p.is_absolute() or '..' in p.parts:
        raise FormatError("path", f"refusing to materialize partition path {path!r}")
    return p

def extract_partitions(data, entries):
    """Yield (path, bytes view) per payload entry, in table order.

    Duplicate entries yield duplicate jobs.
    """
    view = memoryview(data)
    for i, part in enumerate(entries):
        if part.is_pseudo:
            continue
        if part.end > len(data):
            raise FormatError(f"part[{i}] {part.name}", "partition exceeds input length")
        _safe_relpath(part.path)
        yield part.path, view[part.offset:part.end]

def fresh_entries(files):
    """Contiguous layout for (name, path, size, flash_offset, flash_size) tuples."""
    entries = []
    pos = HEADER_SIZE
    for name, path, size, flash_offset, flash_size in files:
        entries.append(PartitionEntry(name, path, pos, size, flash_size, flash_offset, padded_sectors(size)))
        pos += size
    return entries

def restore_entries(recorded, sizes):
    """Recorded offsets from the sidecar, sizes from the current payloads."""
    return [e if e.is_pseudo else e.resized(sizes[e.path]) for e in recorded]

def layout_length(entries, recorded_length=None):
    length = max([HEADER_SIZE] + [e.end for e in entries if not e.is_pseudo])
    if recorded_length is not None:
        length = max(length, recorded_length)
    return length

def finalize_self(entries, length, recorded_length=None):
    if length == recorded_length:
        return list(entries)
    result = []
    for e in entries:
        if e.path == 'SELF':
            size = length + CRC_SIZE
            e = replace(e, size=size, padded_size=(size + 511) // 512 * 512)
        result.append(e)
    return result

def payload_regions(entries):
    """Unique (offset, path, size) regions sorted by offset, empty ones left out."""
    return sorted({(e.offset, e.path, e.size) for e in entries if not e.is_pseudo and e.size})

def _check_width(field_name, value, width):
    if len(value.encode('utf-8')) > width:
        raise PackError(f"{field_name} {value!r} is longer than {width} bytes")

def validate_layout(header):
    if header.num_parts > MAX_PARTS:
        raise PackError(f"{header.num_parts} partitions, at most {MAX_PARTS} fit the header")

    _check_width("model", header.model, MODEL_LEN)
    _check_width("id", header.id, ID_LEN)
    _check_width("manufacturer", header.manufacturer, MANUFACTURER_LEN)
    for e in header.parts:
        _check_width("partition name", e.name, NAME_LEN)
        _check_width("partition path", e.path, PATH_LEN)
        if not e.is_pseudo:
            try:
                _safe_relpath(e.path)
            except FormatError as ex:
                raise PackError(str(ex)) from None

    prev_end = HEADER_SIZE
    prev_path = "header"
    for offset, path, size in payload_regions(header.parts):
        if offset < prev_end:
            raise PackError(f"{path} at 0x{offset:08x} overlaps {prev_path}")
        prev_end = offset + size
        prev_path = path

    if header.length > 0xFFFFFFFF:
        raise PackError(f"image of {header.length} bytes does not fit a 32 bit length")

def write_image(writer, header, emit_payload):
    writer.write(header.pack())
    for offset, path, size in payload_regions(header.parts):
        writer.zero_fill(offset - writer.tell())
        LOGD(f"Added: path={path} pos={offset}/{size}")
        emit_payload(writer, path, size)
    writer.zero_fill(header.length - writer.tell())

    if header.crc:
        writer.write(struct.pack('<I', writer.crc))
        writer.zero_fill(header.tail_padding)

def _build_header(model, manufacturer, entries, recorded_length=None, **fields):
    length = layout_length(entries, recorded_length)
    header = UpdateHeader(model, manufacturer, finalize_self(entries, length, recorded_length), length, **fields)
    validate_layout(header)
    return header

def encode_rkaf(manufacturer, model, partitions, entries=None, length=None, **fields):
    """Assemble an RKAF image in memory.

    `partitions` is an ordered sequence of (name, path, bytes). Without
    `entries` the payloads are laid out back to back after the header;
    with recorded `entries` their offsets are kept and payloads are looked
    up by path.
    """
    payloads = {path: bytes(data) for _, path, data in partitions}
    sizes = {path: len(data) for path, data in payloads.items()}
    if entries is None:
        entries = fresh_entries((name, path, len(data), NO_FLASH_ADDR, 0) for name, path, data in partitions)
    else:
        missing = [e.path for e in entries if not e.is_pseudo and e.path not in payloads]
        if missing:
            raise PackError(f"no payload for {', '.join(missing)}")
        entries = restore_entries(entries, sizes)

    header = _build_header(model, manufacturer, entries, length, **fields)
    out = io.BytesIO()
    write_image(DigestWriter(out), header, lambda w, path, size: w.write(payloads[path]))
    return out.getvalue()

@dataclass
class RkafInfo:
    manufacturer: str
    model: str
    filesize: int
    partitions: list = field(default_factory=list)
    length: int = 0
    crc: bool = True

def unpack_update(data, dstdir):
    """Extract every payload of an RKAF image into dstdir.

    The sidecar and header metadata are written first; partitions follow
    one file at a time, so a failure part way leaves earlier files behind.
    """
    header = decode_rkaf(data)
    LOGI(f"manufacturer: {header.manufacturer}")
    LOGI(f"model: {header.model}")

    Path(dstdir).mkdir(parents=True, exist_ok=True)
    sidecar = write_sidecar(dstdir, header.parts)
    write_meta(os.path.join(dstdir, RKAF_META_NAME), header.metadata())

    for part in header.parts:
        LOGD(f"Unpacking: name={part.name} path={part.path}\tflash={part.flash_offset}/{part.flash_size}"
             f"\tpos={part.offset}/{part.size}/{part.padded_size}")
        if part.is_pseudo:
            LOGD(f"Skip {part.path} entry.")

    for path, chunk in extract_partitions(data, header.parts):
        dest_path = Path(dstdir, path)
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        with open(dest_path, 'wb') as ofp:
            ofp.write(chunk)

    LOGD(f"Partition metadata saved to: {sidecar}")
    return RkafInfo(header.manufacturer, header.model, len(data), header.parts, header.length, header.crc)

def _meta_int(metadata, key, default):
    if metadata is None or key not in metadata:
        return default
    try:
        return int(metadata[key], 0)
    except ValueError:
        raise PackError(f"{RKAF_META_NAME}: bad value for {key}: {metadata[key]!r}") from None

def _file_sizes(srcdir, paths):
    sizes = {}
    for path in paths:
        full = os.path.join(srcdir, path)
        if not os.path.isfile(full):
            raise PackError(f"missing partition file: {full}")
        sizes[path] = os.path.getsize(full)
    return sizes

def plan_update(srcdir, model, manufacturer):
    """Build and validate the header for srcdir without writing anything."""
    if not model or not manufacturer:
        raise PackError("model and manufacturer are required")

    metadata = read_meta(os.path.join(srcdir, RKAF_META_NAME))
    recorded = read_sidecar(srcdir)
    fields = {
        'machine_id': metadata.get('id', '') if metadata else '',
        'version': _meta_int(metadata, 'version', 0),
        'unknown1': _meta_int(metadata, 'unknown1', 0),
        'crc': bool(_meta_int(metadata, 'crc', 1)),
        'tail_padding': _meta_int(metadata, 'tail_padding', 0),
    }

    if recorded is not None:
        sizes = _file_sizes(srcdir, {e.path for e in recorded if not e.is_pseudo})
        entries = restore_entries(recorded, sizes)
        recorded_length = _meta_int(metadata, 'length', None)
    else:
        paths = list_partition_files(srcdir)
        if not paths:
            raise PackError(f"no partition files in {srcdir}")
        sizes = _file_sizes(srcdir, paths)

        image = None
        param_file = os.path.join(srcdir, PARAMETER_NAME)
        if os.path.exists(param_file):
            image = parse_parameter(param_file)
            if metadata is None:
                if image['version'] is not None:
                    fields['version'] = image['version']
                if image['machine_id'] is not None:
                    fields['machine_id'] = image['machine_id']

        files = []
        for path in paths:
            name = PurePosixPath(path).stem
            partition = find_partition_byname(image['partitions'], name) if image else None
            if partition:
                files.append((name, path, sizes[path], partition['start'], partition['size']))
            else:
                files.append((name, path, sizes[path], NO_FLASH_ADDR, 0))
        entries = fresh_entries(files)
        recorded_length = None

    return _build_header(model, manufacturer, entries, recorded_length, **fields)

def pack_update(srcdir, dstfile, model, manufacturer):
    header = plan_update(srcdir, model, manufacturer)

    def emit(writer, path, size):
        writer.copy_from(os.path.join(srcdir, path), size)

    Path(dstfile).parent.mkdir(parents=True, exist_ok=True)
    with open(dstfile, 'wb') as fp:
        writer = DigestWriter(fp)
        write_image(writer, header, emit)

    return PackSummary(str(dstfile), writer.tell(), writer.reporter.finalize(), header.num_parts)
