import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from app.auth.dependencies import token_blacklist
from app.db.mongo import get_database
from app.messages.realtime import manager
from app.utils.rate_limiter import api_rate_limiter, login_rate_limiter


@pytest.fixture
def db():
    """Base Motor en mémoire, neuve pour chaque test"""
    return AsyncMongoMockClient()["transportconnect_test"]


@pytest.fixture(autouse=True)
def reset_process_state():
    api_rate_limiter.reset()
    login_rate_limiter.reset()
    token_blacklist.clear()
    manager.active_users.clear()
    manager.rooms.clear()
    manager.socket_users.clear()
    yield


@pytest.fixture
def client(db):
    """TestClient sans démarrage (pas de création d'index sur un vrai MongoDB)"""
    from app.main import app

    app.dependency_overrides[get_database] = lambda: db
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


@pytest.fixture
def live_client(db, monkeypatch):
    """TestClient démarré : une seule boucle d'événements partagée par les sockets, index créés en mémoire"""
    import app.main as main

    monkeypatch.setattr(main, "db", db)
    main.app.dependency_overrides[get_database] = lambda: db
    with TestClient(main.app, raise_server_exceptions=False) as client:
        yield client
    main.app.dependency_overrides.clear()
