#!/usr/bin/env python3
from rk_errors import UnknownChip

CHIP_CODES = {
    'rk29xx': 0x50,
    'rk30xx': 0x60,
    'rk31xx': 0x70,
    'rk32xx': 0x80,
    'rk3368': 0x41,
    'RK3326': 0x36,
    'RK3562': 0x32,
    'RK3566': 0x38,
    'PX30': 0x30,
}

_BY_NAME = {name.lower(): code for name, code in CHIP_CODES.items()}
_BY_CODE = {code: name for name, code in CHIP_CODES.items()}

def code_for_name(name):
    try:
        return _BY_NAME[name.strip().lower()]
    except (KeyError, AttributeError):
        raise UnknownChip(name) from None

def name_for_code(code):
    try:
        return _BY_CODE[code]
    except KeyError:
        raise UnknownChip(code) from None

def chip_name_to_code(name):
    """Accept a family name or a raw known code such as "0x32"."""
    if isinstance(name, str) and name.lower().startswith('0x'):
        try:
            code = int(name, 16)
        except ValueError:
            raise UnknownChip(name) from None
        name_for_code(code)
        return code
    return code_for_name(name)
