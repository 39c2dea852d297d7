"""
Keystone Test Configuration
Provides shared fixtures for the autonomy engine test suite.
"""
import os
import sys
import threading

import pytest

# Ensure project root is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from src.core import feature_flags  # noqa: E402
from src.core.autonomy.config import AutonomyConfig, MemoryConfig, PersistenceConfig  # noqa: E402
from src.core.autonomy.engine import AutonomyEngine  # noqa: E402
from src.core.autonomy.settings import AutonomySettingsStore  # noqa: E402
from src.core.catalog.actions import default_catalog  # noqa: E402
from src.core.catalog.registry import HandlerRegistry  # noqa: E402
from src.core.catalog.resilience import ResilientRunner  # noqa: E402
from src.core.learning.graduation import GraduationTracker  # noqa: E402
from src.core.learning.pipeline import LearningPipeline  # noqa: E402
from src.core.learning.store import LearningStore  # noqa: E402
from src.core.ledger.store import DecisionLedger  # noqa: E402
from src.core.memory.embeddings import HashingEmbedder  # noqa: E402
from src.core.memory.preferences import PreferenceStore  # noqa: E402
from src.core.memory.service import MemoryService  # noqa: E402


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------
class RecordingHandlers:
    """Registers a handler for every catalog action and records each call.

    `fail[name]` may hold an exception instance raised on every call to
    that action.
    """

    def __init__(self, catalog):
        self.calls = []
        self.fail = {}
        self._lock = threading.Lock()
        self.registry = HandlerRegistry()
        for name in catalog.names():
            self.registry.register(name, self._make(name))

    def _make(self, name):
        def handler(parameters, context):
            with self._lock:
                self.calls.append((name, dict(parameters), context.attempt))
            exc = self.fail.get(name)
            if exc is not None:
                raise exc
            return {"ok": True, "action": name}
        return handler

    def count(self, name):
        with self._lock:
            return sum(1 for call in self.calls if call[0] == name)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _reset_flags(monkeypatch):
    """Every test starts with all subsystems enabled."""
    for flag in ("FEATURE_HEARTBEAT", "FEATURE_LEARNING", "FEATURE_SEMANTIC_MEMORY"):
        monkeypatch.delenv(flag, raising=False)
    feature_flags.reload_flags()
    yield
    feature_flags.reload_flags()


@pytest.fixture
def tmp_data_dir(tmp_path):
    """Provide an isolated temporary data directory for a test."""
    data_dir = tmp_path / "keystone_data"
    data_dir.mkdir()
    return data_dir


@pytest.fixture
def config(tmp_data_dir):
    """Offline configuration: hashing embeddings, SQLite in a temp dir."""
    return AutonomyConfig(
        persistence=PersistenceConfig(data_dir=str(tmp_data_dir)),
        memory=MemoryConfig(embedder="hashing"),
    )


@pytest.fixture
def handlers():
    return RecordingHandlers(default_catalog())


@pytest.fixture
def make_engine(config, handlers):
    """Factory building an engine on the test's SQLite file.

    Usage:
        engine = make_engine()                    # vectors + learning
        engine = make_engine(semantic=False)      # fallback search only
    """
    def _make(semantic=True, learning=True, cfg=None, catalog=None, registry=None):
        cfg = cfg or config
        db_path = cfg.db_path
        ledger = DecisionLedger(db_path)
        store = LearningStore(db_path)
        prefs = PreferenceStore(db_path)
        settings = AutonomySettingsStore(db_path)
        for s in (ledger, store, prefs, settings):
            s.initialize()
        embedder = HashingEmbedder(cfg.memory.embedding_dimension) if semantic else None
        memory = MemoryService(ledger, store, prefs, embedder, cfg.memory)
        graduation = GraduationTracker(store, settings, cfg.learning.graduation)
        pipeline = LearningPipeline(ledger, store, memory, graduation, cfg.learning) if learning else None
        return AutonomyEngine(
            catalog=catalog or default_catalog(),
            handlers=registry or handlers.registry,
            ledger=ledger,
            settings=settings,
            memory=memory,
            learning=pipeline,
            graduation=graduation,
            config=cfg,
            runner=ResilientRunner(sleep=lambda _: None),
            learning_store=store,
        )
    return _make


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def env_override(monkeypatch):
    """Factory fixture to set env vars scoped to a single test.

    Usage:
        def test_something(env_override):
            env_override(FEATURE_LEARNING="false")
    """
    def _set(**kwargs):
        for key, value in kwargs.items():
            monkeypatch.setenv(key, value)
        feature_flags.reload_flags()
    return _set
