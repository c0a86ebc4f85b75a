"""Subject identifier validation."""
from __future__ import annotations

import re
from typing import Any

from bson import ObjectId

_HEX24 = re.compile(r"^[0-9a-fA-F]{24}$")


def is_valid_subject_id(value: Any) -> bool:
    """
    True when `value` is a 24-char hex string that bson also accepts and
    round-trips unchanged through ObjectId construction. Both checks must
    pass; ObjectId.is_valid alone also accepts 12-byte strings.
    """
    if not isinstance(value, str) or not _HEX24.match(value):
        return False
    if not ObjectId.is_valid(value):
        return False
    return str(ObjectId(value)) == value.lower()
