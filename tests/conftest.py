import pytest

from app_pollsys import app as flask_app
from ledger import MemoryLedger

ADMIN_KEY = "test-admin-key"


@pytest.fixture
def ledger():
    return MemoryLedger()


@pytest.fixture
def app(ledger):
    previous = dict(flask_app.config)
    flask_app.config.update(TESTING=True, ADMIN_KEY=ADMIN_KEY, FRONTEND_URL="*", LEDGER=ledger)
    yield flask_app
    flask_app.config.update(previous)


@pytest.fixture
def client(app):
    return app.test_client()
