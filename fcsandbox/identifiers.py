#!/usr/bin/env python3

import secrets

from .errors import IdentifierError

ID_BYTES = 16

# Byte offsets of the 8-4-4-4-12 hex groups
_GROUPS = ((0, 4), (4, 6), (6, 8), (8, 10), (10, 16))


def format_instance_id(raw):
    """Format 16 raw bytes as an uppercase grouped hex string"""
    if len(raw) != ID_BYTES:
        raise ValueError(f"Instance IDs are {ID_BYTES} bytes, got {len(raw)}")
    return "-".join(raw[start:end].hex().upper() for start, end in _GROUPS)


def generate_instance_id():
    """Generate a 128-bit instance ID from the OS random source

    Returns:
        str: 36-character ID such as ``1A2B3C4D-5E6F-7081-92A3-B4C5D6E7F809``

    Raises:
        IdentifierError: if the randomness source is unavailable
    """
    try:
        raw = secrets.token_bytes(ID_BYTES)
    except (OSError, NotImplementedError) as e:
        raise IdentifierError(f"Failed to generate instance ID: {e}") from e
    return format_instance_id(raw)
