from __future__ import annotations

import threading
from datetime import datetime, timezone

import pytest

from session_log import (
    SessionEntry,
    SessionLogStore,
    StorageError,
    count_entries,
    parse_entries,
)


def _entry(symptoms: str, output: str = "Rest and fluids.", health_context: str | None = None) -> SessionEntry:
    return SessionEntry.create(
        symptoms=symptoms,
        model_output=output,
        health_context=health_context,
        now=datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc),
    )


def test_load_creates_header_for_unknown_identifier(store, data_dir):
    raw = store.load("user-a")

    assert raw.startswith("# Medical History - User user-a\n\n**Created:** ")
    assert raw.endswith("\n\n---\n\n## Session History\n\n")
    assert (data_dir / "user-a.md").read_text(encoding="utf-8") == raw
    assert count_entries(raw) == 0


def test_load_returns_existing_log_verbatim(store, data_dir):
    content = "# Medical History - User user-a\r\n\r\nhand-edited\r\n"
    (data_dir / "user-a.md").write_bytes(content.encode("utf-8"))

    assert store.load("user-a") == content


def test_append_renders_the_entry_grammar(store):
    store.load("user-a")
    store.append("user-a", _entry("fever", "Drink water.", "asthma"))

    raw = store.load("user-a")
    assert raw.endswith(
        "\n### Session 2026-03-01T09:30:00.000Z\n\n"
        "**Symptoms Reported:**\nfever\n\n"
        "**Additional Health Context:**\nasthma\n\n\n"
        "**Diagnosis & Recommendations:**\nDrink water.\n\n"
        "---\n\n"
    )


def test_append_omits_absent_health_context(store):
    store.append("user-a", _entry("fever"))

    raw = store.load("user-a")
    assert "**Additional Health Context:**" not in raw
    assert "**Symptoms Reported:**\nfever\n\n\n\n**Diagnosis & Recommendations:**" in raw


def test_append_without_prior_load_writes_header_first(store):
    store.append("user-b", _entry("cough"))

    raw = store.load("user-b")
    assert raw.startswith("# Medical History - User user-b")
    assert count_entries(raw) == 1


def test_appended_entries_round_trip(store):
    symptoms = ["fever", "cough\nworse at night", "rash", "headache", "back pain"]
    for idx, text in enumerate(symptoms):
        store.append("user-a", _entry(text, f"Advice #{idx}", "diabetic" if idx % 2 else None))

    raw = store.load("user-a")
    parsed = parse_entries(raw)

    assert count_entries(raw) == len(symptoms)
    assert [entry.symptoms for entry in parsed] == symptoms
    assert [entry.model_output for entry in parsed] == [f"Advice #{idx}" for idx in range(len(symptoms))]
    assert [entry.health_context for entry in parsed] == [None, "diabetic", None, "diabetic", None]


def test_logs_are_isolated_per_identifier(store):
    store.append("user-a", _entry("fever"))
    store.append("user-b", _entry("cough"))

    assert "fever" in store.load("user-a")
    assert "fever" not in store.load("user-b")


def test_invalid_identifier_is_rejected(store):
    with pytest.raises(ValueError):
        store.load("../escape")
    with pytest.raises(ValueError):
        store.append("a/b", _entry("fever"))


def test_initialize_failure_is_reported_and_calls_fail_individually(tmp_path):
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("occupied", encoding="utf-8")
    degraded = SessionLogStore(blocker / "user-data")

    assert degraded.initialize() is False
    with pytest.raises(StorageError):
        degraded.load("user-a")
    with pytest.raises(StorageError):
        degraded.append("user-a", _entry("fever"))


def test_concurrent_appends_do_not_interleave(store):
    def worker(identifier: str, count: int) -> None:
        for idx in range(count):
            store.append(identifier, _entry(f"{identifier} symptom {idx}", "x" * 2000))

    threads = [
        threading.Thread(target=worker, args=(identifier, 10))
        for identifier in ("user-a", "user-a", "user-b", "user-c")
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    raw_a = store.load("user-a")
    parsed_a = parse_entries(raw_a)
    assert count_entries(raw_a) == 20
    assert all(entry.model_output == "x" * 2000 for entry in parsed_a)
    assert count_entries(store.load("user-b")) == 10
    assert count_entries(store.load("user-c")) == 10
