"""Shared pytest fixtures for chatrelay tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402

from chatrelay.domain.fanout import FanoutDispatcher  # noqa: E402
from chatrelay.domain.persistence import PersistenceManager  # noqa: E402
from chatrelay.domain.pipeline import MessagePipeline  # noqa: E402
from chatrelay.realtime.hub import SubscriberHub  # noqa: E402
from chatrelay.storage.cache import BoundedCacheStore  # noqa: E402


@pytest.fixture
def cache_store():
    return BoundedCacheStore(max_conversations=100, max_messages=200)


@pytest.fixture
def hub():
    return SubscriberHub(put_timeout=0.1)


@pytest.fixture
def pipeline(cache_store, hub):
    """Cache-backed pipeline with no automation endpoint and no media token."""
    dispatcher = FanoutDispatcher(hub, forwarder=None, max_workers=2)
    p = MessagePipeline(PersistenceManager(cache_store), dispatcher, media=None, hub=hub)
    yield p
    p.close()


@pytest.fixture(autouse=True)
def no_meta_sender_env(monkeypatch):
    """Keep a developer's Graph API credentials out of app factory tests."""
    monkeypatch.delenv("META_PHONE_NUMBER_ID", raising=False)
    monkeypatch.delenv("META_ACCESS_TOKEN", raising=False)
