"""
Shared pytest fixtures for command arbiter tests.

Provides fixtures for:
- A fake host (pools, snapshot, execution log, scripted LLM, telemetry sink)
- Candidate pools
- Sessions and engines
- Feature flag reset
"""

import sys
from pathlib import Path
from typing import List

import pytest

# Add src and tests to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from command_arbiter.engine import ArbitrationEngine  # noqa: E402
from command_arbiter.feature_flags import flags  # noqa: E402
from command_arbiter.models import (  # noqa: E402
    CHAT_SCOPE,
    ActiveSnapshot,
    Candidate,
    CandidatePool,
    OptionType,
)
from command_arbiter.session import SessionContext  # noqa: E402
from helpers import LINKS_LABELS, WIDGET_A, FakeHost, make_candidates  # noqa: E402


@pytest.fixture(autouse=True)
def reset_flags():
    """Every test starts from default flags."""
    flags.clear_all_overrides()
    yield
    flags.clear_all_overrides()


@pytest.fixture
def links_candidates() -> List[Candidate]:
    return make_candidates(WIDGET_A, LINKS_LABELS)


@pytest.fixture
def links_pool(links_candidates) -> CandidatePool:
    return CandidatePool(WIDGET_A, links_candidates)


@pytest.fixture
def host(links_candidates) -> FakeHost:
    """Host with one open widget 'links_panel' and a small chat pool."""
    return FakeHost(
        pools={
            WIDGET_A.key: links_candidates,
            CHAT_SCOPE.key: make_candidates(
                CHAT_SCOPE, ["Summarize", "Translate"], OptionType.CHAT_OPTION, ids=["c1", "c2"],
            ),
        },
        snapshot=ActiveSnapshot(active_widget_id="links_panel", open_widget_ids=["links_panel"]),
    )


@pytest.fixture
def session() -> SessionContext:
    return SessionContext("test-session")


@pytest.fixture
def engine(host) -> ArbitrationEngine:
    return ArbitrationEngine(host)
