import hashlib
import struct

import pytest

from rk_digest import rkcrc

RKAF_HEADER_FORMAT = '<4sI34s30s56sIII'
RKAF_PART_FORMAT = '<32s60sIIIII'
RKFW_HEADER_FORMAT = '<4sHIIHBBBBBIIIIIIIII45s'

def build_rkaf(parts, payloads, length, model="RK3562", manufacturer="RK3562",
               crc=True, machine_id="", version=0, unknown1=0):
    """parts: (name, path, pos, size[, flash_offset, flash_size]) tuples."""
    image = bytearray(length)
    struct.pack_into(RKAF_HEADER_FORMAT, image, 0, b'RKAF', length,
                     model.encode(), machine_id.encode(), manufacturer.encode(),
                     unknown1, version, len(parts))
    for i, part in enumerate(parts):
        name, path, pos, size = part[:4]
        flash_offset, flash_size = part[4:] if len(part) == 6 else (0x4000 * (i + 1), 0x2000)
        struct.pack_into(RKAF_PART_FORMAT, image, 140 + i * 112, name.encode(), path.encode(),
                         flash_size, pos, flash_offset, (size + 2047) // 2048, size)
        if path in payloads:
            image[pos:pos + size] = payloads[path][:size]
    if crc:
        image += struct.pack('<I', rkcrc(bytes(image)))
    return bytes(image)

def build_rkfw(boot, update, chip=0x32, version=0x01000000, code=0x02000000,
               when=(2025, 11, 6, 13, 33, 14), unknown2=1, backup_endpos=0, md5=False):
    header = struct.pack(RKFW_HEADER_FORMAT, b'RKFW', 0x66, version, code, *when, chip,
                         0x66, len(boot), 0x66 + len(boot), len(update),
                         0, unknown2, 0, backup_endpos, b'\x00' * 45)
    image = header + boot + update
    if md5:
        image += hashlib.md5(image).hexdigest().encode()
    return image

def payload(seed, size):
    return bytes((seed * 31 + i) & 0xFF for i in range(256)) * (size // 256) + bytes(size % 256)

@pytest.fixture
def small_rkaf():
    """SELF entry, a duplicated pair and zero padding between payloads."""
    payloads = {
        "parameter.txt": b"FIRMWARE_VER:1.0.0\nMACHINE_MODEL:RK3562\n",
        "uboot.img": payload(1, 0x1000),
        "boot.img": payload(2, 0x0610),
    }
    parts = [
        ("package-file", "SELF", 0, 0x2800 + 4),
        ("parameter", "parameter.txt", 0x800, len(payloads["parameter.txt"])),
        ("uboot", "uboot.img", 0x1000, 0x1000),
        ("uboot", "uboot.img", 0x1000, 0x1000),
        ("boot", "boot.img", 0x2000, 0x0610),
    ]
    return build_rkaf(parts, payloads, 0x2800, machine_id="007", version=0x01000000, unknown1=3)
