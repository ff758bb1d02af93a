"""
API fixtures: the FastAPI app bound to the per-test session, clock and
Stripe double.
"""

from typing import Callable, Dict, Generator

from fastapi.testclient import TestClient
import pytest

from carshare.api.dependencies import get_clock, get_db, get_stripe_service
from carshare.auth import create_access_token
from carshare.main import app
from carshare.models.user import User


@pytest.fixture
def client(db, clock, stripe_gateway) -> Generator[TestClient, None, None]:
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_stripe_service] = lambda: stripe_gateway
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> Callable[[User], Dict[str, str]]:
    def _headers(user: User) -> Dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token({'sub': user.id})}"}

    return _headers
