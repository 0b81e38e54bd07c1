from .entry import SessionEntry, count_entries, parse_entries, render_entry, render_header
from .identifiers import is_valid_identifier, new_identifier
from .provenance import SectionState, extract_user_provided_history
from .store import SessionLogStore, StorageError

__all__ = [
    "SectionState",
    "SessionEntry",
    "SessionLogStore",
    "StorageError",
    "count_entries",
    "extract_user_provided_history",
    "is_valid_identifier",
    "new_identifier",
    "parse_entries",
    "render_entry",
    "render_header",
]
