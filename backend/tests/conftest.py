from __future__ import annotations

import importlib
import sys
from pathlib import Path
from typing import Callable, Iterator

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from diagnosis_core import AllowAllPaymentGate  # noqa: E402
from session_log import SessionLogStore  # noqa: E402


class FakeModel:
    """Replays canned chunks; raises ``error`` after them when given."""

    def __init__(self, chunks: list[str], error: Exception | None = None) -> None:
        self.chunks = chunks
        self.error = error
        self.calls: list[list[dict[str, str]]] = []

    def stream(self, messages: list[dict[str, str]]) -> Iterator[str]:
        self.calls.append(messages)
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error


@pytest.fixture
def data_dir(tmp_path) -> Path:
    return tmp_path / "user-data"


@pytest.fixture
def store(data_dir) -> SessionLogStore:
    log_store = SessionLogStore(data_dir)
    log_store.initialize()
    return log_store


@pytest.fixture
def fake_model_factory() -> Callable[..., FakeModel]:
    def _make(chunks: list[str], error: Exception | None = None) -> FakeModel:
        return FakeModel(chunks, error)

    return _make


@pytest.fixture
def backend_module(data_dir, monkeypatch):
    monkeypatch.setenv("OPENROUTER_API_KEY", "test-openrouter-key")
    monkeypatch.setenv("EVM_ADDRESS", "0x000000000000000000000000000000000000dEaD")
    monkeypatch.setenv("DIAGNOSE_DATA_DIR", str(data_dir))
    monkeypatch.setenv("LOG_LEVEL", "WARNING")

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def fake_model(backend_module, monkeypatch) -> FakeModel:
    model = FakeModel(["Based on ", "your symptoms, ", "rest and fluids."])
    monkeypatch.setattr(backend_module.container.orchestrator, "model", model)
    return model


@pytest.fixture
def client(backend_module, fake_model):
    with TestClient(backend_module.app) as test_client:
        yield test_client


@pytest.fixture
def free_payments(backend_module, monkeypatch) -> None:
    monkeypatch.setattr(backend_module.container, "payment_gate", AllowAllPaymentGate())
