from __future__ import annotations

import re
import uuid

IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:@-]{0,63}$")


def is_valid_identifier(value: str) -> bool:
    return bool(IDENTIFIER_RE.fullmatch(value))


def new_identifier() -> str:
    return str(uuid.uuid4())
