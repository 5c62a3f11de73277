#!/usr/bin/env python3
import hashlib
import crcmod

_rkcrc_func = crcmod.mkCrcFun(0x104C10DB7, initCrc=0, rev=False, xorOut=0)

def rkcrc(data, crc=0):
    return _rkcrc_func(data, crc)

class IntegrityReporter:
    """Running MD5 over bytes as they are written. Reported, never checked."""

    def __init__(self):
        self._md5 = hashlib.md5()
        self.length = 0

    def update(self, data):
        self._md5.update(data)
        self.length += len(data)

    def finalize(self):
        return self._md5.hexdigest()

class DigestWriter:
    """Forwards writes to `fp`, feeding the reporter and a running RKCRC."""

    def __init__(self, fp, reporter=None):
        self.fp = fp
        self.reporter = reporter if reporter is not None else IntegrityReporter()
        self.crc = 0

    def write(self, data):
        self.fp.write(data)
        self.reporter.update(data)
        self.crc = rkcrc(data, self.crc)
        return len(data)

    def zero_fill(self, count):
        while count > 0:
            chunk = min(count, 65536)
            self.write(b'\x00' * chunk)
            count -= chunk

    def copy_from(self, path, length):
        with open(path, 'rb') as ifp:
            remaining = length
            while remaining > 0:
                chunk = ifp.read(min(remaining, 65536))
                if not chunk:
                    raise OSError(f"{path}: file shrank while packing")
                self.write(chunk)
                remaining -= len(chunk)

    def tell(self):
        return self.reporter.length

class PackSummary:
    def __init__(self, path, size, md5, partition_count=None):
        self.path = path
        self.size = size
        self.md5 = md5
        self.partition_count = partition_count

    def __repr__(self):
        return f"PackSummary(path={self.path!r}, size={self.size}, md5={self.md5})"
