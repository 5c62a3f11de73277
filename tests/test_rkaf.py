import os
import struct

import pytest

from conftest import build_rkaf, payload
from rk_digest import rkcrc
from rk_errors import FormatError, PackError
from rk_partitions import SIDECAR_NAME, read_sidecar
from rkaf_image import HEADER_SIZE, decode_rkaf, encode_rkaf, extract_partitions, pack_update, unpack_update

SCENARIO_B_PARTS = [
    ("package-file", "package-file", 0x800, 0x1d0),
    ("bootloader", "MiniLoaderAll.bin", 0x1000, 0x70000),
    ("parameter", "parameter.txt", 0x71000, 0x2a0),
    ("misc", "misc.img", 0x71800, 0x3000),
    ("uboot", "uboot.img", 0x74800, 0x400000),
    ("uboot", "uboot.img", 0x74800, 0x400000),
    ("boot", "boot.img", 0x474800, 0x1234),
    ("recovery", "recovery.img", 0x476000, 0x2000),
    ("oem", "oem.img", 0x478000, 0x800),
    ("userdata", "userdata.img", 0x478800, 0x10),
    ("rootfs", "rootfs.img", 0x479000, 0x5000),
    ("backup", "RESERVED", 0, 0),
]
SCENARIO_B_LENGTH = 0x47e000

@pytest.fixture(scope="module")
def scenario_b():
    payloads = {path: bytes([i + 1]) * size
                for i, (_, path, _, size) in enumerate(SCENARIO_B_PARTS) if path != "RESERVED"}
    return build_rkaf(SCENARIO_B_PARTS, payloads, SCENARIO_B_LENGTH)

def test_scenario_b_keeps_duplicates(scenario_b):
    header = decode_rkaf(scenario_b)
    assert header.manufacturer == "RK3562"
    assert header.model == "RK3562"
    assert header.num_parts == 12
    assert len(header.parts) == 12
    assert [(p.name, p.path, p.offset, p.size) for p in header.parts] == SCENARIO_B_PARTS

    uboot = [p for p in header.parts if p.path == "uboot.img"]
    assert len(uboot) == 2
    assert uboot[0] == uboot[1]
    assert uboot[0].offset == 0x74800
    assert uboot[0].size == 0x400000

def test_scenario_b_round_trip(scenario_b):
    header = decode_rkaf(scenario_b)
    partitions = [(p.name, p.path, bytes(view)) for p, (path, view)
                  in zip([p for p in header.parts if not p.is_pseudo],
                         extract_partitions(scenario_b, header.parts))]
    image = encode_rkaf(header.manufacturer, header.model, partitions, entries=header.parts,
                        length=header.length, machine_id=header.id, version=header.version,
                        unknown1=header.unknown1, crc=header.crc)
    assert image == scenario_b

def test_extract_yields_duplicate_jobs(small_rkaf):
    header = decode_rkaf(small_rkaf)
    jobs = list(extract_partitions(small_rkaf, header.parts))
    assert [path for path, _ in jobs] == ["parameter.txt", "uboot.img", "uboot.img", "boot.img"]
    assert bytes(jobs[1][1]) == payload(1, 0x1000)
    assert bytes(jobs[1][1]) == bytes(jobs[2][1])

def test_header_fields(small_rkaf):
    header = decode_rkaf(small_rkaf)
    assert header.length == 0x2800
    assert header.id == "007"
    assert header.version == 0x01000000
    assert header.unknown1 == 3
    assert header.crc
    assert header.parts[0].is_pseudo

def test_bad_magic():
    with pytest.raises(FormatError) as excinfo:
        decode_rkaf(b'RKFX' + bytes(4096))
    assert excinfo.value.field == "signature"

def test_truncated_header():
    with pytest.raises(FormatError) as excinfo:
        decode_rkaf(b'RKAF' + bytes(100))
    assert excinfo.value.field == "header"

def test_truncated_image(small_rkaf):
    with pytest.raises(FormatError) as excinfo:
        decode_rkaf(small_rkaf[:0x2000])
    assert excinfo.value.field == "length"

def test_crc_mismatch_still_extracts(small_rkaf, tmp_path, capsys):
    broken = bytearray(small_rkaf)
    broken[-1] ^= 0xFF
    info = unpack_update(bytes(broken), tmp_path)
    assert "crc mismatch" in capsys.readouterr().err
    assert info.crc
    assert (tmp_path / "uboot.img").read_bytes() == payload(1, 0x1000)
    assert (tmp_path / "boot.img").read_bytes() == payload(2, 0x0610)

    repacked = tmp_path / "repacked.img"
    pack_update(tmp_path, repacked, "RK3562", "RK3562")
    assert repacked.read_bytes() == small_rkaf

def test_missing_crc_is_accepted(small_rkaf):
    header = decode_rkaf(small_rkaf[:-4])
    assert not header.crc

def test_trailing_zero_padding(small_rkaf):
    header = decode_rkaf(small_rkaf + bytes(512))
    assert header.tail_padding == 512

def test_trailing_garbage(small_rkaf):
    with pytest.raises(FormatError) as excinfo:
        decode_rkaf(small_rkaf + b'junk')
    assert excinfo.value.field == "length"

def test_partition_outside_input():
    parts = [("boot", "boot.img", 0x800, 0x1000)]
    image = build_rkaf(parts, {}, 0x1000, crc=False)
    with pytest.raises(FormatError) as excinfo:
        decode_rkaf(image)
    assert "boot" in excinfo.value.field

def test_too_many_partitions():
    image = bytearray(build_rkaf([], {}, HEADER_SIZE))
    struct.pack_into('<I', image, 136, 17)
    image[-4:] = struct.pack('<I', rkcrc(bytes(image[:-4])))
    with pytest.raises(FormatError) as excinfo:
        decode_rkaf(bytes(image))
    assert excinfo.value.field == "num_parts"

def test_encode_fresh_layout():
    partitions = [("boot", "boot.img", b'\x01' * 100), ("rootfs", "rootfs.img", b'\x02' * 50)]
    image = encode_rkaf("RK3562", "RK3562", partitions)
    header = decode_rkaf(image)
    assert header.length == HEADER_SIZE + 150
    assert len(image) == HEADER_SIZE + 150 + 4
    assert [(p.offset, p.size) for p in header.parts] == [(HEADER_SIZE, 100), (HEADER_SIZE + 100, 50)]
    assert image[HEADER_SIZE:HEADER_SIZE + 100] == b'\x01' * 100

def test_encode_is_deterministic():
    partitions = [("boot", "boot.img", b'abc' * 10)]
    assert encode_rkaf("m", "m", partitions) == encode_rkaf("m", "m", partitions)

def test_encode_rejects_long_fields():
    with pytest.raises(PackError):
        encode_rkaf("x" * 57, "model", [("boot", "boot.img", b'1')])
    with pytest.raises(PackError):
        encode_rkaf("m", "m", [("n" * 33, "boot.img", b'1')])

def test_encode_rejects_overlap(small_rkaf):
    header = decode_rkaf(small_rkaf)
    partitions = [(p.name, p.path, b'\x05' * 0x1800) for p in header.parts if not p.is_pseudo]
    with pytest.raises(PackError):
        encode_rkaf("m", "m", partitions, entries=header.parts, length=header.length)

def test_unpack_then_pack_is_byte_exact(small_rkaf, tmp_path):
    out = tmp_path / "out"
    info = unpack_update(small_rkaf, out)
    assert info.model == "RK3562"
    assert len(info.partitions) == 5
    assert (out / "uboot.img").read_bytes() == payload(1, 0x1000)
    assert not (out / "SELF").exists()

    entries = read_sidecar(out)
    assert [e.path for e in entries] == ["SELF", "parameter.txt", "uboot.img", "uboot.img", "boot.img"]

    repacked = tmp_path / "repacked.img"
    summary = pack_update(out, repacked, info.model, info.manufacturer)
    assert repacked.read_bytes() == small_rkaf
    assert summary.size == len(small_rkaf)
    assert summary.partition_count == 5

def test_pack_with_grown_partition(small_rkaf, tmp_path):
    out = tmp_path / "out"
    unpack_update(small_rkaf, out)
    (out / "boot.img").write_bytes(b'\x07' * 0x1000)

    repacked = tmp_path / "repacked.img"
    pack_update(out, repacked, "RK3562", "RK3562")
    header = decode_rkaf(repacked.read_bytes())
    boot = header.parts[-1]
    assert (boot.offset, boot.size, boot.padded_size) == (0x2000, 0x1000, 2)
    assert header.length == 0x3000
    assert header.parts[0].size == 0x3000 + 4

def test_pack_rejects_overlap_without_writing(small_rkaf, tmp_path):
    out = tmp_path / "out"
    unpack_update(small_rkaf, out)
    (out / "uboot.img").write_bytes(b'\x07' * 0x1800)

    repacked = tmp_path / "repacked.img"
    with pytest.raises(PackError):
        pack_update(out, repacked, "RK3562", "RK3562")
    assert not repacked.exists()

def test_pack_missing_partition_file(small_rkaf, tmp_path):
    out = tmp_path / "out"
    unpack_update(small_rkaf, out)
    os.remove(out / "boot.img")
    with pytest.raises(PackError):
        pack_update(out, tmp_path / "x.img", "RK3562", "RK3562")
    assert not (tmp_path / "x.img").exists()

def test_scenario_c_fresh_directory(tmp_path):
    src = tmp_path / "src"
    src.mkdir()
    names = ["boot", "dtbo", "misc", "oem", "recovery", "resource",
             "rootfs", "trust", "uboot", "userdata", "vbmeta", "zimage"]
    sizes = {}
    for i, name in enumerate(names):
        data = payload(i, 100 + i * 37)
        (src / f"{name}.img").write_bytes(data)
        sizes[name] = len(data)

    dst = tmp_path / "update.img"
    summary = pack_update(src, dst, "RK3562", "RK3562")
    image = dst.read_bytes()
    header = decode_rkaf(image)

    assert summary.partition_count == 12
    assert header.num_parts == 12
    assert header.length == HEADER_SIZE + sum(sizes.values())
    assert len(image) == header.length + 4
    assert [p.name for p in header.parts] == names
    assert [p.path for p in header.parts] == [f"{n}.img" for n in names]
    assert not (src / SIDECAR_NAME).exists()

def test_fresh_directory_uses_parameter(tmp_path):
    src = tmp_path / "src"
    src.mkdir()
    (src / "parameter.txt").write_text(
        "FIRMWARE_VER:2.1\nMACHINE_ID:007\n"
        "CMDLINE:console=ttyS0 mtdparts=rk29xxnand:0x00002000@0x00004000(uboot),-@0x00010000(rootfs:grow)\n")
    (src / "uboot.img").write_bytes(b'u' * 10)
    (src / "rootfs.img").write_bytes(b'r' * 10)
    (src / "extra.bin").write_bytes(b'e' * 10)

    dst = tmp_path / "update.img"
    pack_update(src, dst, "RK3562", "RK3562")
    header = decode_rkaf(dst.read_bytes())
    by_name = {p.name: p for p in header.parts}

    assert header.version == (2 << 24) + (1 << 16)
    assert header.id == "007"
    assert (by_name["uboot"].flash_offset, by_name["uboot"].flash_size) == (0x4000, 0x2000)
    assert (by_name["rootfs"].flash_offset, by_name["rootfs"].flash_size) == (0x10000, 0xFFFFFFFF)
    assert (by_name["parameter"].flash_offset, by_name["parameter"].flash_size) == (0, 0x4000)
    assert (by_name["extra"].flash_offset, by_name["extra"].flash_size) == (0xFFFFFFFF, 0)

def test_pack_requires_model(tmp_path):
    (tmp_path / "boot.img").write_bytes(b'1')
    with pytest.raises(PackError):
        pack_update(tmp_path, tmp_path / "out.img", "", "RK3562")

def test_pack_empty_directory(tmp_path):
    src = tmp_path / "src"
    src.mkdir()
    with pytest.raises(PackError):
        pack_update(src, tmp_path / "out.img", "m", "m")

def test_empty_partition_round_trip(tmp_path):
    parts = [("misc", "misc.img", 0, 0), ("boot", "boot.img", 0x800, 0x800)]
    image = build_rkaf(parts, {"boot.img": payload(3, 0x800)}, 0x1000)

    out = tmp_path / "out"
    unpack_update(image, out)
    assert (out / "misc.img").read_bytes() == b''

    repacked = tmp_path / "repacked.img"
    pack_update(out, repacked, "RK3562", "RK3562")
    assert repacked.read_bytes() == image
