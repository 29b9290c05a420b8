"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from memoria.conversations.store import ConversationStore
from memoria.errors import CompletionError, EmbeddingError
from memoria.identity import Identity
from memoria.notes.store import NoteStore
from memoria.retrieval.pipeline import RetrievalPipeline
from memoria.service import NotesService
from memoria.vectors.local import LocalVectorIndex


class FakeEmbedder:
    """Deterministic embedder: looks vectors up by exact text.

    Unknown text maps to ``default``. Texts in ``failing`` (or every text
    when ``fail_all``) raise ``EmbeddingError``.
    """

    def __init__(self) -> None:
        self.vectors: dict[str, list[float]] = {}
        self.default: list[float] = [0.0, 0.0, 1.0]
        self.failing: set[str] = set()
        self.fail_all = False
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail_all or text in self.failing:
            raise EmbeddingError(f"embedding failed for {text!r}")
        return list(self.vectors.get(text, self.default))


class FakeCompleter:
    """Returns queued responses in order, recording every prompt.

    Call numbers (0-based) listed in ``failing_calls`` raise
    ``CompletionError``.
    """

    def __init__(self) -> None:
        self.responses: list[str] = []
        self.failing_calls: set[int] = set()
        self.prompts: list[str] = []
        self.stops: list[list[str]] = []

    async def complete(self, prompt: str, stop_sequences: list[str] | None = None) -> str:
        call = len(self.prompts)
        self.prompts.append(prompt)
        self.stops.append(list(stop_sequences or []))
        if call in self.failing_calls:
            raise CompletionError("upstream unavailable")
        if self.responses:
            return self.responses.pop(0)
        return f"response {call}"


@pytest.fixture(autouse=False)
def _no_turso(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure tests use local file, not remote Turso."""
    monkeypatch.setattr("memoria.config.settings.turso_database_url", "")


@pytest.fixture
def db_path(tmp_path: Path, _no_turso: None) -> Path:
    return tmp_path / "test.db"


@pytest.fixture
def note_store(db_path: Path) -> NoteStore:
    return NoteStore(db_path=db_path)


@pytest.fixture
def conversation_store(db_path: Path) -> ConversationStore:
    return ConversationStore(db_path=db_path)


@pytest.fixture
def vector_index(db_path: Path) -> LocalVectorIndex:
    return LocalVectorIndex(db_path=db_path)


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def completer() -> FakeCompleter:
    return FakeCompleter()


@pytest.fixture
def pipeline(
    note_store: NoteStore,
    conversation_store: ConversationStore,
    vector_index: LocalVectorIndex,
    embedder: FakeEmbedder,
    completer: FakeCompleter,
) -> RetrievalPipeline:
    return RetrievalPipeline(
        notes=note_store,
        conversations=conversation_store,
        index=vector_index,
        embedder=embedder,
        completer=completer,
    )


@pytest.fixture
def service(
    note_store: NoteStore,
    conversation_store: ConversationStore,
    pipeline: RetrievalPipeline,
) -> NotesService:
    return NotesService(notes=note_store, conversations=conversation_store, pipeline=pipeline)


@pytest.fixture
def identity() -> Identity:
    return Identity(user_id="user_1", display_name="Ada", email="ada@example.com")
