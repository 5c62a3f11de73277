#!/usr/bin/env python3

class RKError(Exception):
    pass

class FormatError(RKError):
    """Raised when an image does not decode; `field` names what failed."""

    def __init__(self, field, message):
        self.field = field
        self.message = message
        super().__init__(message)

    def __str__(self):
        return f"{self.field}: {self.message}"

class UnknownSignature(FormatError):
    def __init__(self, signature):
        self.signature = bytes(signature)
        super().__init__("signature", f"unknown signature {self.signature!r}")

class UnknownChip(RKError, KeyError):
    def __init__(self, chip):
        self.chip = chip
        super().__init__(chip)

    def __str__(self):
        if isinstance(self.chip, int):
            return f"unknown chip code 0x{self.chip:02x}"
        return f"unknown chip family: {self.chip}"

class PackError(RKError):
    pass
