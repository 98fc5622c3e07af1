"""
Pytest configuration and shared fixtures for backend tests.

WHAT: Test markers, an isolated database per test and a scripted chain peer
WHY: Keep tests independent of the configured database and a running node
HOW: SQLite file under tmp_path, fresh ChangeStream and NegotiationStore,
     MockChainPeer in place of web3
"""

from decimal import Decimal

import pytest

from novaland.api.deps import reset_dependencies
from novaland.chain import reset_chain_peer
from novaland.core.models import OfferStatus
from novaland.core.change_stream import ChangeStream
from novaland.core.database import Base, build_engine, build_session_factory
from novaland.core.negotiation_store import NegotiationStore
from tests.fixtures.mock_chain import MockChainPeer

# Lower-case hex wallets, as the store normalizes them
BUYER = "0x" + "b1" * 20
SELLER = "0x" + "5e" * 20
OTHER_BUYER = "0x" + "b2" * 20
STRANGER = "0x" + "cc" * 20


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (isolated component tests)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (multiple components)"
    )


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset the chain peer and API dependency singletons around each test.

    WHAT: Clear cached peer, property cache, resolver and orchestrator
    WHY: Prevent state leaking between tests
    HOW: Call the reset helpers before and after each test
    """
    reset_chain_peer()
    reset_dependencies()
    yield
    reset_chain_peer()
    reset_dependencies()


@pytest.fixture
def engine(tmp_path):
    """Fresh SQLite database with all tables created."""
    test_engine = build_engine(f"sqlite:///{tmp_path / 'negotiation.db'}")
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db_session(session_factory):
    """Raw ORM session for schema-level tests."""
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def stream():
    return ChangeStream()


@pytest.fixture
def store(session_factory, stream):
    return NegotiationStore(session_factory, stream)


@pytest.fixture
def peer():
    """Chain peer with property 1 (1.2 ETH) and property 2 (2.5 ETH) listed by SELLER."""
    mock = MockChainPeer()
    mock.add_property(1, owner=SELLER, price="1.2", title="Harbor View Loft")
    mock.add_property(2, owner=SELLER, price="2.5", title="Maple Street Cottage")
    return mock


def accepted_offer_thread(store, property_id=1, price="1.0", buyer=BUYER, seller=SELLER):
    """Open thread with one accepted offer; returns (thread, offer)."""
    thread = store.create_thread(buyer, seller, property_id)
    offer = store.insert_offer(thread.id, buyer, Decimal(price), "final offer")
    offer = store.resolve_offer(offer.id, OfferStatus.ACCEPTED)
    return thread, offer
