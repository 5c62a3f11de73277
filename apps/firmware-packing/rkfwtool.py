#!/usr/bin/env python3
import os
import sys

import rk_log
from rk_chips import chip_name_to_code, name_for_code
from rk_errors import PackError, RKError, UnknownSignature
from rk_log import LOGE, LOGI
from rk_partitions import RKAF_META_NAME, RKFW_META_NAME, read_meta
from rkaf_image import RKAF_MAGIC, RkafInfo, pack_update, unpack_update
from rkfw_image import RKFW_MAGIC, RkfwInfo, pack_rom, parse_version, unpack_rom

__all__ = ['detect_format', 'unpack_file', 'pack_rkfw', 'pack_rkaf', 'chip_name_to_code', 'main']

SIGNATURES = {
    RKFW_MAGIC: 'RKFW',
    RKAF_MAGIC: 'RKAF',
}

def detect_format(data):
    signature = bytes(data[:4])
    try:
        return SIGNATURES[signature]
    except KeyError:
        raise UnknownSignature(signature) from None

def unpack_file(input_path, output_dir):
    """Unpack an RKFW or RKAF image, picked by its leading signature.

    An RKFW wrapper yields BOOT and embedded-update.img; run unpack again
    on the latter to get at the partitions.
    """
    with open(input_path, 'rb') as fp:
        data = fp.read()

    fmt = detect_format(data)
    LOGI(f"{fmt} signature detected")
    if fmt == 'RKFW':
        return unpack_rom(data, output_dir)
    return unpack_update(data, output_dir)

def _as_int(name, value):
    if isinstance(value, int):
        return value
    try:
        return int(str(value), 0)
    except ValueError:
        raise PackError(f"bad {name}: {value!r}") from None

def pack_rkfw(input_dir, output_path, chip, version, timestamp, code_field, **extra):
    if None in (chip, version, timestamp, code_field):
        raise PackError("chip, version, timestamp and code are required")

    chip_code = chip if isinstance(chip, int) else chip_name_to_code(chip)
    name_for_code(chip_code)
    if isinstance(version, str):
        try:
            version = parse_version(version)
        except ValueError as e:
            raise PackError(str(e)) from None

    return pack_rom(input_dir, output_path, chip_code, version,
                    _as_int("timestamp", timestamp), _as_int("code", code_field), **extra)

def pack_rkaf(input_dir, output_path, model, manufacturer):
    return pack_update(input_dir, output_path, model, manufacturer)

def rkfw_defaults(indir):
    """pack-rkfw arguments recorded by a previous unpack, if any."""
    metadata = read_meta(os.path.join(indir, RKFW_META_NAME)) or {}
    defaults = {}
    for key in ('chip', 'version', 'timestamp', 'code'):
        if key in metadata:
            defaults[key] = metadata[key]
    extra = {}
    for key in ('head_len', 'unknown1', 'unknown2', 'system_fstype', 'backup_endpos'):
        if key in metadata:
            extra[key] = _as_int(key, metadata[key])
    if 'reserved' in metadata:
        try:
            extra['reserved'] = bytes.fromhex(metadata['reserved'])
        except ValueError:
            raise PackError(f"{RKFW_META_NAME}: bad reserved bytes") from None
    if 'md5' in metadata:
        extra['md5_trailer'] = bool(_as_int('md5', metadata['md5']))
    return defaults, extra

def rkaf_defaults(indir):
    metadata = read_meta(os.path.join(indir, RKAF_META_NAME)) or {}
    return {key: metadata[key] for key in ('model', 'manufacturer') if metadata.get(key)}

def print_unpack(info):
    if isinstance(info, RkfwInfo):
        print(f"rom version: {info.version}")
        print(f"code field: 0x{info.code:08x}")
        print(f"timestamp: {info.timestamp}")
        print(f"chip: {info.chip_family} (0x{info.chip_code:02x})")
        print(f"loader offset/len: {info.boot_offset}/{info.boot_size}")
        print(f"image offset/len: {info.update_offset}/{info.update_size}")
    elif isinstance(info, RkafInfo):
        print(f"manufacturer: {info.manufacturer}")
        print(f"model: {info.model}")
        print(f"filesize: {info.filesize}")
        for part in info.partitions:
            print(f"{part.offset:08x}-{part.size:08x} {part.name:26} {part.path}")
        print(f"{len(info.partitions)} partitions")

def print_pack(summary):
    print(f"{summary.path}: {summary.size} bytes")
    if summary.partition_count is not None:
        print(f"partitions: {summary.partition_count}")
    print(f"md5: {summary.md5}")

def usage(prog):
    print(f"Usage: {prog} unpack <image> <outdir>")
    print(f"       {prog} pack-rkfw <indir> <image> [--chip=NAME] [--version=A.B.C] [--timestamp=SECS] [--code=0xNNNNNNNN] [--md5]")
    print(f"       {prog} pack-rkaf <indir> <image> [--model=MODEL] [--manufacturer=NAME]")
    print(f"       {prog} chip <name>")
    print("Options:")
    print("\t--verbose\t\tDisplay more runtime informations.")
    print("\t--help\t\t\tDisplay this information.")
    print("pack-rkfw and pack-rkaf default their options from rkfw.meta / rkaf_header.meta in <indir>.")

def main(argv=None):
    argv = sys.argv if argv is None else argv
    prog = os.path.basename(argv[0])

    opts = {}
    args = []
    for arg in argv[1:]:
        if arg == '--verbose':
            rk_log.set_verbose(True)
        elif arg == '--help':
            usage(prog)
            return 0
        elif arg == '--md5':
            opts['md5'] = True
        elif arg.startswith('--') and '=' in arg:
            key, value = arg[2:].split('=', 1)
            opts[key] = value
        elif arg.startswith('--'):
            LOGE(f"Unknown opt:{arg}")
            usage(prog)
            return 1
        else:
            args.append(arg)

    if not args:
        usage(prog)
        return 1

    command = args[0].lstrip('-')
    try:
        if command == 'unpack' and len(args) == 3:
            print_unpack(unpack_file(args[1], args[2]))
            print("UnPack OK!")
        elif command == 'pack-rkfw' and len(args) == 3:
            defaults, extra = rkfw_defaults(args[1])
            defaults.update({k: v for k, v in opts.items() if k in ('chip', 'version', 'timestamp', 'code')})
            if 'md5' in opts:
                extra['md5_trailer'] = True
            print_pack(pack_rkfw(args[1], args[2], defaults.get('chip'), defaults.get('version'),
                                 defaults.get('timestamp'), defaults.get('code'), **extra))
            print("Pack OK!")
        elif command == 'pack-rkaf' and len(args) == 3:
            defaults = rkaf_defaults(args[1])
            defaults.update({k: v for k, v in opts.items() if k in ('model', 'manufacturer')})
            print_pack(pack_rkaf(args[1], args[2], defaults.get('model'), defaults.get('manufacturer')))
            print("Pack OK!")
        elif command == 'chip' and len(args) == 2:
            code = chip_name_to_code(args[1])
            print(f"{name_for_code(code)}: 0x{code:02x}")
        else:
            usage(prog)
            return 1
    except (RKError, OSError) as e:
        LOGE(str(e))
        return 1

    return 0

if __name__ == "__main__":
    sys.exit(main())
