from __future__ import annotations

import re
import threading

import anyio
import pytest
from starlette.concurrency import iterate_in_threadpool

from diagnosis_core import InputError, InteractionOrchestrator, user_trailer
from session_log import StorageError, count_entries, parse_entries

_TRAILER_RE = re.compile(r"\n\n--- USER_ID: (\S+) ---$")


def _orchestrator(store, model):
    return InteractionOrchestrator(store=store, model=model)


def test_first_call_generates_identifier_and_records_one_entry(store, fake_model_factory, data_dir):
    model = fake_model_factory(["Stay hydrated ", "and rest."])
    orchestrator = _orchestrator(store, model)

    output = "".join(orchestrator.run("fever"))

    match = _TRAILER_RE.search(output)
    assert match is not None
    identifier = match.group(1)
    assert output == f"Stay hydrated and rest.{user_trailer(identifier)}"

    assert [path.name for path in data_dir.iterdir()] == [f"{identifier}.md"]
    raw = store.load(identifier)
    entries = parse_entries(raw)
    assert len(entries) == 1
    assert entries[0].symptoms == "fever"
    assert entries[0].health_context is None
    assert entries[0].model_output == "Stay hydrated and rest."
    assert "**Additional Health Context:**" not in raw


def test_omitting_identifier_yields_fresh_tokens(store, fake_model_factory):
    orchestrator = _orchestrator(store, fake_model_factory(["ok"]))

    seen = set()
    for _ in range(5):
        prepared = orchestrator.prepare("fever")
        assert prepared.generated_identifier
        assert prepared.identifier not in seen
        seen.add(prepared.identifier)


def test_same_identifier_files_both_interactions_under_one_log(store, fake_model_factory):
    orchestrator = _orchestrator(store, fake_model_factory(["ok"]))

    list(orchestrator.run("fever", identifier="patient-7"))
    list(orchestrator.run("cough", health_context="asthma", identifier="patient-7"))

    entries = parse_entries(store.load("patient-7"))
    assert [entry.symptoms for entry in entries] == ["fever", "cough"]
    assert entries[1].health_context == "asthma"


def test_prompt_contains_prior_symptoms_but_not_prior_diagnosis(store, fake_model_factory):
    first = fake_model_factory(["You clearly have chronic bronchitis."])
    list(_orchestrator(store, first).run("cough", identifier="patient-7"))

    second = fake_model_factory(["ok"])
    list(_orchestrator(store, second).run("sore throat", health_context="non-smoker", identifier="patient-7"))

    system_message, user_message = second.calls[0]
    assert system_message["role"] == "system"
    assert "**Symptoms Reported:**\ncough" in system_message["content"]
    assert "bronchitis" not in system_message["content"]
    assert "Do NOT assume or infer medical conditions" in system_message["content"]
    assert user_message == {
        "role": "user",
        "content": "Additional Context: non-smoker\n\nCurrent Symptoms: sore throat",
    }


def test_user_message_without_health_context(store, fake_model_factory):
    prepared = _orchestrator(store, fake_model_factory([])).prepare("fever", identifier="patient-7")

    assert prepared.messages[1]["content"] == "Current Symptoms: fever"


def test_stream_error_relays_notice_and_skips_entry(store, fake_model_factory):
    model = fake_model_factory(["Based on..."], error=RuntimeError("provider dropped the connection"))
    orchestrator = _orchestrator(store, model)

    chunks = list(orchestrator.run("fever", identifier="patient-7"))
    output = "".join(chunks)

    assert chunks[0] == "Based on..."
    assert output.startswith("Based on...\n\n[Error during streaming]: provider dropped the connection\n")
    assert "[Chunks received before error: 1]\n" in output
    assert "[Response length before error: 11 characters]\n" in output
    assert "USER_ID" not in output
    assert count_entries(store.load("patient-7")) == 0


@pytest.mark.parametrize("symptoms", ["", "   ", None])
def test_missing_symptoms_rejected_before_storage_or_model(store, fake_model_factory, data_dir, symptoms):
    model = fake_model_factory(["never"])
    orchestrator = _orchestrator(store, model)

    with pytest.raises(InputError):
        orchestrator.prepare(symptoms, identifier="patient-7")

    assert model.calls == []
    assert list(data_dir.iterdir()) == []


def test_invalid_identifier_is_an_input_error(store, fake_model_factory, data_dir):
    with pytest.raises(InputError):
        _orchestrator(store, fake_model_factory([])).prepare("fever", identifier="../../etc/passwd")
    assert list(data_dir.iterdir()) == []


def test_chunks_are_relayed_in_production_order(store, fake_model_factory):
    pieces = [f"part-{idx} " for idx in range(20)]
    orchestrator = _orchestrator(store, fake_model_factory(pieces))

    chunks = list(orchestrator.run("fever", identifier="patient-7"))

    assert chunks[:-1] == pieces
    assert chunks[-1] == user_trailer("patient-7")


def test_storage_failure_on_commit_is_reported_inline(store, fake_model_factory, monkeypatch):
    orchestrator = _orchestrator(store, fake_model_factory(["Rest."]))
    prepared = orchestrator.prepare("fever", identifier="patient-7")

    def failing_append(identifier, entry):
        raise StorageError("disk full")

    monkeypatch.setattr(store, "append", failing_append)
    output = "".join(orchestrator.stream(prepared))

    assert output == "Rest.\n\n[Error saving session history]: disk full\n"


class _GatedModel:
    """Yields ``before``, then blocks until released before yielding ``after``."""

    def __init__(self, before: list[str], after: list[str]) -> None:
        self.before = before
        self.after = after
        self.release = threading.Event()

    def stream(self, messages):
        yield from self.before
        if not self.release.wait(timeout=5):
            raise RuntimeError("model was never released")
        yield from self.after


def test_closed_relay_still_gets_entry_persisted(store):
    model = _GatedModel(["first "], ["second ", "third"])
    orchestrator = _orchestrator(store, model)
    relay = orchestrator.stream(orchestrator.prepare("fever", identifier="patient-7"))

    assert next(relay) == "first "
    relay.close()
    assert list(relay) == []
    model.release.set()

    assert relay.wait(timeout=5)
    entries = parse_entries(store.load("patient-7"))
    assert len(entries) == 1
    assert entries[0].model_output == "first second third"


def test_entry_persists_when_transport_drops_the_body(store):
    model = _GatedModel(["first "], ["second ", "third"])
    orchestrator = _orchestrator(store, model)
    relay = orchestrator.stream(orchestrator.prepare("fever", identifier="patient-7"))

    async def read_first_then_disconnect():
        body = iterate_in_threadpool(relay)
        first = await body.__anext__()
        await body.aclose()
        return first

    assert anyio.run(read_first_then_disconnect) == "first "
    assert count_entries(store.load("patient-7")) == 0

    model.release.set()
    assert relay.wait(timeout=5)
    entries = parse_entries(store.load("patient-7"))
    assert len(entries) == 1
    assert entries[0].model_output == "first second third"


def test_whitespace_health_context_is_treated_as_absent(store, fake_model_factory):
    orchestrator = _orchestrator(store, fake_model_factory(["Rest."]))

    prepared = orchestrator.prepare("fever", health_context="   \n ", identifier="patient-7")
    list(orchestrator.stream(prepared))

    assert prepared.health_context is None
    assert prepared.messages[1]["content"] == "Current Symptoms: fever"
    assert "**Additional Health Context:**" not in store.load("patient-7")


def test_single_character_identifier_is_accepted(store, fake_model_factory):
    orchestrator = _orchestrator(store, fake_model_factory(["ok"]))

    output = "".join(orchestrator.run("fever", identifier="a"))

    assert output.endswith(user_trailer("a"))
    assert count_entries(store.load("a")) == 1


def test_empty_chunks_are_not_relayed(store, fake_model_factory):
    orchestrator = _orchestrator(store, fake_model_factory(["", "Rest.", ""]))

    chunks = list(orchestrator.run("fever", identifier="patient-7"))

    assert chunks == ["Rest.", user_trailer("patient-7")]
