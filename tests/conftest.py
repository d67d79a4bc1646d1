"""Pytest fixtures for Lorekeeper tests."""

import pytest

from lorekeeper import Character, EngineConfig, Lorebook, LorebookEntry, MemoryEngine, MemoryStore
from lorekeeper.llm import ProviderError


def word_count(text: str) -> int:
    """Deterministic token counter: one token per whitespace-separated word."""
    return len(text.split()) if text else 0


class FakeProvider:
    """Scripted stand-in for a chat provider.

    Replies are consumed in order; an exception instance in the script is
    raised instead of returned.
    """

    def __init__(self, replies=None, name="openrouter"):
        self.name = name
        self.replies = list(replies or [])
        self.calls = []

    def _next(self, model, messages):
        self.calls.append({"model": model, "messages": messages})
        if not self.replies:
            return ""
        reply = self.replies.pop(0)
        if isinstance(reply, ProviderError):
            raise reply
        return reply

    async def complete(self, model, messages, temperature=0.8, max_tokens=2048):
        return self._next(model, messages)

    async def stream(self, model, messages, temperature=0.8, max_tokens=2048):
        text = self._next(model, messages)
        for word in text.split(" "):
            yield word + " "


@pytest.fixture
def config():
    return EngineConfig(
        db_path=":memory:",
        embedding_backend="hash",
        vector_dimensions=16,
        background_models=["model-a", "model-b"],
        consolidation_interval=3,
    )


@pytest.fixture
def store(config):
    store = MemoryStore(config.db_path, config.vector_dimensions)
    yield store
    store.close()


@pytest.fixture
def engine(config):
    """Create an in-memory engine with no API keys configured."""
    engine = MemoryEngine(config, key_provider=lambda provider: None, token_counter=word_count)
    yield engine
    engine.close()


@pytest.fixture
def character():
    return Character(
        id="elara",
        name="Elara",
        description="A wandering elven ranger.",
        personality="Wry, loyal, suspicious of mages.",
        scenario="The Whispering Woods, at dusk.",
        first_mes="*Elara lowers her bow.* \"You're far from the road, traveler.\"",
        lorebook=Lorebook(
            entries=[
                LorebookEntry(
                    keys=["Silverbrook"],
                    content="Silverbrook is a river town ruled by the Guild.",
                    priority=5,
                ),
            ]
        ),
    )


@pytest.fixture
def seeded_engine(engine, character):
    """Engine with a character and a conversation opened with its first message."""
    engine.register_character(character)
    conversation = engine.create_conversation(character.id)
    return engine, conversation


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def online_engine(config, character, fake_provider):
    """Engine whose every provider resolves to the scripted fake."""
    engine = MemoryEngine(
        config,
        key_provider=lambda provider: "test-key",
        provider_factory=lambda name, key: fake_provider,
        token_counter=word_count,
    )
    engine.register_character(character)
    yield engine
    engine.close()
