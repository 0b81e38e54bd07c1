"""Derive the user-asserted view of a session log.

The raw log interleaves what the patient reported with what the model
answered. Only the former is safe to feed back into a new prompt, otherwise
an earlier hallucinated diagnosis comes back as if the patient had stated it.
"""
from __future__ import annotations

import re
from enum import Enum

from .entry import (
    DIAGNOSIS_MARKER,
    HEALTH_CONTEXT_MARKER,
    SEPARATOR,
    SESSION_HEADING_PREFIX,
    SESSION_HISTORY_LABEL,
    SYMPTOMS_MARKER,
)

_HEADER_RE = re.compile(r"# Medical History[^\n]*\n\n\*\*Created:\*\*[^\n]*")
_BLOCK_JOINER = f"\n\n{SEPARATOR}\n\n"


class SectionState(Enum):
    """Which field of the current entry the scanner is inside.

    Transitions, checked in this order for every line:

    - ``### Session ...``        -> NONE, line starts a new block
    - contains symptoms marker   -> SYMPTOMS, line kept
    - contains context marker    -> HEALTH_CONTEXT, line kept
    - contains diagnosis marker  -> DIAGNOSIS, line dropped
    - stripped line is ``---``   -> NONE, line dropped
    - anything else              -> state unchanged, kept only in SYMPTOMS or HEALTH_CONTEXT
    """

    NONE = "none"
    SYMPTOMS = "symptoms"
    HEALTH_CONTEXT = "health_context"
    DIAGNOSIS = "diagnosis"

    @property
    def keeps_lines(self) -> bool:
        return self in {SectionState.SYMPTOMS, SectionState.HEALTH_CONTEXT}


def _header_of(raw: str) -> str:
    match = _HEADER_RE.match(raw)
    return match.group(0) if match else ""


def extract_user_provided_history(raw: str) -> str:
    blocks: list[str] = []
    current: list[str] = []
    state = SectionState.NONE

    for line in raw.split("\n"):
        if line.startswith(SESSION_HEADING_PREFIX):
            if current:
                blocks.append("\n".join(current))
            current = [line]
            state = SectionState.NONE
            continue
        if SYMPTOMS_MARKER in line:
            state = SectionState.SYMPTOMS
            current.append(line)
            continue
        if HEALTH_CONTEXT_MARKER in line:
            state = SectionState.HEALTH_CONTEXT
            current.append(line)
            continue
        if DIAGNOSIS_MARKER in line:
            state = SectionState.DIAGNOSIS
            continue
        if line.strip() == SEPARATOR:
            state = SectionState.NONE
            continue
        if state.keeps_lines:
            current.append(line)

    # A log cut off inside a diagnosis (no closing separator) loses its last
    # block here. Kept as-is so existing logs filter the same way.
    if current and state is not SectionState.DIAGNOSIS:
        blocks.append("\n".join(current))

    view = f"{_header_of(raw)}\n\n{SEPARATOR}\n\n{SESSION_HISTORY_LABEL}\n\n"
    if not blocks:
        return view
    return f"{view}{_BLOCK_JOINER.join(blocks)}\n\n"
