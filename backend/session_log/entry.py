from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from .time_utils import to_iso, utc_now

SESSION_HEADING_PREFIX = "### Session"
SYMPTOMS_MARKER = "**Symptoms Reported:**"
HEALTH_CONTEXT_MARKER = "**Additional Health Context:**"
DIAGNOSIS_MARKER = "**Diagnosis & Recommendations:**"
SEPARATOR = "---"
SESSION_HISTORY_LABEL = "## Session History"


@dataclass(frozen=True)
class SessionEntry:
    timestamp: str
    symptoms: str
    model_output: str
    health_context: str | None = None

    @classmethod
    def create(
        cls,
        *,
        symptoms: str,
        model_output: str,
        health_context: str | None = None,
        now: datetime | None = None,
    ) -> "SessionEntry":
        return cls(
            timestamp=to_iso(now or utc_now()),
            symptoms=symptoms,
            model_output=model_output,
            health_context=health_context or None,
        )


def render_header(identifier: str, created_at: str) -> str:
    return (
        f"# Medical History - User {identifier}\n\n"
        f"**Created:** {created_at}\n\n"
        f"{SEPARATOR}\n\n"
        f"{SESSION_HISTORY_LABEL}\n\n"
    )


def render_entry(entry: SessionEntry) -> str:
    health_context = ""
    if entry.health_context:
        health_context = f"{HEALTH_CONTEXT_MARKER}\n{entry.health_context}\n"
    return (
        f"\n{SESSION_HEADING_PREFIX} {entry.timestamp}\n\n"
        f"{SYMPTOMS_MARKER}\n{entry.symptoms}\n\n"
        f"{health_context}\n\n"
        f"{DIAGNOSIS_MARKER}\n{entry.model_output}\n\n"
        f"{SEPARATOR}\n\n"
    )


def _is_heading(line: str) -> bool:
    return line.startswith(SESSION_HEADING_PREFIX)


def count_entries(raw: str) -> int:
    return sum(1 for line in raw.split("\n") if _is_heading(line))


def _section_text(lines: list[str]) -> str:
    return "\n".join(lines).strip("\n")


def parse_entries(raw: str) -> list[SessionEntry]:
    """Parse every session block of a raw log back into entries.

    Field boundaries are the marker lines; the diagnosis runs up to the last
    separator line of its block. Leading and trailing blank lines of each
    field are not preserved.
    """
    lines = raw.split("\n")
    starts = [idx for idx, line in enumerate(lines) if _is_heading(line)]
    entries: list[SessionEntry] = []
    for position, start in enumerate(starts):
        end = starts[position + 1] if position + 1 < len(starts) else len(lines)
        block = lines[start + 1 : end]
        timestamp = lines[start][len(SESSION_HEADING_PREFIX) :].strip()

        markers: dict[str, int] = {}
        for idx, line in enumerate(block):
            for marker in (SYMPTOMS_MARKER, HEALTH_CONTEXT_MARKER, DIAGNOSIS_MARKER):
                if marker in line and marker not in markers:
                    markers[marker] = idx
        if SYMPTOMS_MARKER not in markers:
            continue

        separators = [idx for idx, line in enumerate(block) if line.strip() == SEPARATOR]
        diagnosis_at = markers.get(DIAGNOSIS_MARKER)
        context_at = markers.get(HEALTH_CONTEXT_MARKER)

        symptoms_end = context_at if context_at is not None else diagnosis_at
        symptoms = _section_text(block[markers[SYMPTOMS_MARKER] + 1 : symptoms_end])

        health_context = None
        if context_at is not None:
            health_context = _section_text(block[context_at + 1 : diagnosis_at]) or None

        model_output = ""
        if diagnosis_at is not None:
            closing = [idx for idx in separators if idx > diagnosis_at]
            diagnosis_end = closing[-1] if closing else len(block)
            model_output = _section_text(block[diagnosis_at + 1 : diagnosis_end])

        entries.append(
            SessionEntry(
                timestamp=timestamp,
                symptoms=symptoms,
                model_output=model_output,
                health_context=health_context,
            )
        )
    return entries
