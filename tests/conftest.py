"""
Pytest fixtures for the bookstore POS.

Everything runs against tests.fakes.InMemoryStore; no MongoDB is needed.
"""
import pytest
from fastapi.testclient import TestClient

from auth import StaticIdentity
from main import app, get_sessions, get_store
from pos import PosSession, SessionRegistry
from schemas import Actor, Book
from tests.fakes import InMemoryStore

CASHIER = Actor(id="staff-1", name="Asha")


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def atlas(store):
    return store.books.create_book(
        Book(title="Atlas", author="R. Mercator", category="Reference", pages=320, price=100.0, stock=3)
    )


@pytest.fixture
def dune(store):
    return store.books.create_book(
        Book(title="Dune", author="F. Herbert", category="Fiction", pages=612, price=45.5, stock=10)
    )


@pytest.fixture
def cashier():
    return StaticIdentity(CASHIER)


@pytest.fixture
def printed():
    return []


@pytest.fixture
def session(store, atlas, dune, printed):
    s = PosSession(store, printer=printed.append)
    s.refresh_catalog()
    return s


@pytest.fixture
def client(store):
    registry = SessionRegistry()
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_sessions] = lambda: registry
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def staff_headers():
    return {"X-Actor-Id": CASHIER.id, "X-Actor-Name": CASHIER.name}
