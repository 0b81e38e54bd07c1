from __future__ import annotations

import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from session_log import (
    SessionEntry,
    SessionLogStore,
    StorageError,
    extract_user_provided_history,
    is_valid_identifier,
    new_identifier,
)
from session_log.time_utils import utc_now

from .llm import TextStreamProvider
from .logging_utils import get_logger

logger = get_logger(__name__)

SYSTEM_PROMPT_TEMPLATE = """You are a healthcare assistant. You have access to symptoms and health information that the patient has previously reported.

IMPORTANT: The information below contains ONLY what the patient has explicitly reported in previous sessions. Do NOT assume or infer medical conditions that were not explicitly stated by the patient. Only reference information that was directly provided by the patient.

PREVIOUS PATIENT REPORTS:
{history}

Instructions:
- Review the patient's previously reported symptoms and health information above
- Reference previous symptoms or patterns if relevant
- Note any recurring issues
- Provide continuity of care recommendations
- ONLY reference medical conditions, diagnoses, or health information that was explicitly stated by the patient in their reports
- Do NOT assume chronic conditions or diagnoses unless the patient explicitly mentioned them
- You are given a user's health history and a list of symptoms. You need to diagnose the user's condition and recommend a treatment plan based on the CURRENT symptoms and ONLY the explicitly reported health information."""


class InputError(Exception):
    pass


def user_trailer(identifier: str) -> str:
    return f"\n\n--- USER_ID: {identifier} ---"


def build_messages(history: str, symptoms: str, health_context: str | None) -> list[dict[str, str]]:
    if health_context:
        user_content = f"Additional Context: {health_context}\n\nCurrent Symptoms: {symptoms}"
    else:
        user_content = f"Current Symptoms: {symptoms}"
    return [
        {"role": "system", "content": SYSTEM_PROMPT_TEMPLATE.format(history=history)},
        {"role": "user", "content": user_content},
    ]


@dataclass
class PreparedInteraction:
    identifier: str
    symptoms: str
    health_context: str | None
    messages: list[dict[str, str]] = field(default_factory=list)
    generated_identifier: bool = False


class InteractionRelay:
    """Iterator over one interaction's output, produced by a worker thread.

    The worker consumes the model, commits the entry and queues every piece
    of output. It never waits on the reader, so an abandoned relay still
    finishes and persists the interaction.
    """

    def __init__(self, produce: Callable[[Callable[[str], None]], None], name: str) -> None:
        self._queue: queue.Queue[str | None] = queue.Queue()
        self._closed = False
        self._worker = threading.Thread(target=self._run, args=(produce,), name=name, daemon=True)
        self._worker.start()

    def _run(self, produce: Callable[[Callable[[str], None]], None]) -> None:
        try:
            produce(self._queue.put)
        finally:
            self._queue.put(None)

    def __iter__(self) -> "InteractionRelay":
        return self

    def __next__(self) -> str:
        if self._closed:
            raise StopIteration
        item = self._queue.get()
        if item is None:
            self._closed = True
            raise StopIteration
        return item

    def close(self) -> None:
        self._closed = True

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the worker has finished; returns False on timeout."""
        self._worker.join(timeout)
        return not self._worker.is_alive()


class InteractionOrchestrator:
    """Runs one diagnosis interaction against the log store and the model.

    ``prepare`` does everything that can fail before a byte is relayed, so the
    transport can still answer with a proper error status. ``stream`` starts
    generation and returns the relay; the entry is committed once generation
    completes, whether or not anyone is still reading.
    """

    def __init__(
        self,
        store: SessionLogStore,
        model: TextStreamProvider,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.model = model
        self._clock = clock

    @staticmethod
    def validate_request(
        symptoms: str | None,
        identifier: str | None = None,
    ) -> None:
        if not symptoms or not symptoms.strip():
            raise InputError("Symptoms are required. Please provide a 'symptoms' field in the request body.")
        if identifier and not is_valid_identifier(identifier.strip()):
            raise InputError("Invalid userId")

    def prepare(
        self,
        symptoms: str | None,
        health_context: str | None = None,
        identifier: str | None = None,
    ) -> PreparedInteraction:
        self.validate_request(symptoms, identifier)
        resolved = identifier.strip() if identifier and identifier.strip() else None
        generated = resolved is None
        if generated:
            resolved = new_identifier()

        raw_log = self.store.load(resolved)
        history = extract_user_provided_history(raw_log)
        health_context = (health_context or "").strip() or None
        return PreparedInteraction(
            identifier=resolved,
            symptoms=symptoms,
            health_context=health_context,
            messages=build_messages(history, symptoms, health_context),
            generated_identifier=generated,
        )

    def _produce(self, prepared: PreparedInteraction, emit: Callable[[str], None]) -> None:
        parts: list[str] = []
        chunk_count = 0
        try:
            for chunk in self.model.stream(prepared.messages):
                chunk_count += 1
                if not chunk:
                    continue
                parts.append(chunk)
                emit(chunk)
        except Exception as exc:
            response_length = sum(len(part) for part in parts)
            logger.error(
                "Error during streaming for %s after %d chunks: %s",
                prepared.identifier,
                chunk_count,
                exc,
            )
            emit(f"\n\n[Error during streaming]: {exc}\n")
            emit(f"[Chunks received before error: {chunk_count}]\n")
            emit(f"[Response length before error: {response_length} characters]\n")
            return

        entry = SessionEntry.create(
            symptoms=prepared.symptoms,
            model_output="".join(parts),
            health_context=prepared.health_context,
            now=self._clock(),
        )
        try:
            self.store.append(prepared.identifier, entry)
        except StorageError as exc:
            logger.error("Failed to save session for %s: %s", prepared.identifier, exc)
            emit(f"\n\n[Error saving session history]: {exc}\n")
            return

        emit(user_trailer(prepared.identifier))

    def stream(self, prepared: PreparedInteraction) -> InteractionRelay:
        return InteractionRelay(
            lambda emit: self._produce(prepared, emit),
            name=f"interaction-{prepared.identifier}",
        )

    def run(
        self,
        symptoms: str | None,
        health_context: str | None = None,
        identifier: str | None = None,
    ) -> InteractionRelay:
        prepared = self.prepare(symptoms, health_context, identifier)
        return self.stream(prepared)
