import pytest

from helpers import data_uri, image_bytes
from orchestration.governor import RetryGovernor
from orchestration.jobs import InMemoryJobTracker
from orchestration.orchestrator import Orchestrator
from orchestration.settings import OrchestratorConfig


@pytest.fixture
def avatar_ref():
    return data_uri(image_bytes((300, 400)))


@pytest.fixture
def garment_ref():
    return data_uri(image_bytes((200, 200), color=(10, 120, 220)))


@pytest.fixture
def fast_config():
    return OrchestratorConfig(
        provider_timeout_s=5.0,
        global_timeout_s=3.0,
        cancel_grace_s=0.5,
        force_grace_s=0.2,
    )


@pytest.fixture
def make_orchestrator(fast_config):
    created = []

    def factory(adapters, tracker=None, config=None, listener=None):
        orch = Orchestrator(
            {a.provider_id: a for a in adapters},
            tracker=tracker or InMemoryJobTracker(),
            governor=RetryGovernor(force_grace_s=0.2, poll_s=0.01),
            config=config or fast_config,
            listener=listener,
            max_workers=8,
        )
        created.append((orch, adapters))
        return orch

    yield factory
    for orch, adapters in created:
        for a in adapters:
            a.release.set()
        orch.shutdown(wait=False)
