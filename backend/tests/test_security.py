"""Authentication and authorization tests"""
import pytest
from fastapi import status

from app.core.security import get_session_id


PROTECTED_ROUTES = [
    ("post", "/api/fulfillments/create"),
    ("get", "/api/fulfillments"),
    ("get", "/api/fulfillments/1"),
    ("get", "/api/fulfillments/preview?item_id=1"),
    ("get", "/api/contributions/items/1/history"),
    ("post", "/api/connect/onboard"),
    ("post", "/api/connect/refresh"),
    ("get", "/api/connect/status"),
]


@pytest.mark.critical
class TestAuthentication:
    """Session handling on protected routes"""

    @pytest.mark.parametrize("method,path", PROTECTED_ROUTES)
    def test_protected_route_requires_auth(self, client, method, path):
        kwargs = {"json": {}} if method == "post" else {}
        response = getattr(client, method)(path, **kwargs)
        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["errorCode"] == "Unauthorized"

    def test_expired_session(self, client, owner, login_as, mock_redis):
        session_id = login_as(owner)
        mock_redis.delete(f"session:{session_id}")
        response = client.get("/api/fulfillments")
        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert "expired" in response.json()["message"]

    def test_bearer_token(self, client, owner, mock_redis):
        mock_redis.setex("session:bearer_session", 60, str(owner.id))
        response = client.get("/api/fulfillments", headers={"Authorization": "Bearer bearer_session"})
        assert response.status_code == status.HTTP_200_OK

    def test_unknown_bearer_token(self, client):
        response = client.get("/api/fulfillments", headers={"Authorization": "Bearer nope"})
        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_public_routes(self, client, item):
        assert client.get(f"/api/contributions/items/{item.id}").status_code == status.HTTP_200_OK
        assert client.get("/health").status_code == status.HTTP_200_OK


@pytest.mark.critical
class TestOwnership:
    """Users only see and redeem what they own"""

    def test_preview_other_users_item(self, client, login_as, other_user, funded_item):
        login_as(other_user)
        response = client.get(f"/api/fulfillments/preview?item_id={funded_item.id}")
        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_other_users_fulfillment_hidden(self, client, login_as, owner, other_user, funded_item, payout_account):
        login_as(owner)
        created = client.post("/api/fulfillments/create", json={
            "item_id": funded_item.id,
            "event_id": funded_item.event_id,
            "idempotency_key": f"redeem_{funded_item.id}_abcdefghijklmnop",
        }).json()
        fulfillment_id = created["fulfillment"]["fulfillment_id"]

        login_as(other_user)
        response = client.get(f"/api/fulfillments/{fulfillment_id}")
        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert client.get("/api/fulfillments").json()["pagination"]["total"] == 0

    def test_redeem_with_event_of_another_owner(self, client, login_as, other_user, funded_item, db_session):
        from app.models.event import Event
        own_event = Event(user_id=other_user.id, title="Mine", slug="mine")
        db_session.add(own_event)
        db_session.commit()

        login_as(other_user)
        response = client.post("/api/fulfillments/create", json={
            "item_id": funded_item.id,
            "event_id": own_event.id,
            "idempotency_key": f"redeem_{funded_item.id}_abcdefghijklmnop",
        })
        # The item is not in the caller's event
        assert response.status_code == status.HTTP_404_NOT_FOUND


@pytest.mark.medium
class TestSessionExtraction:
    """Where the session id is read from"""

    class FakeRequest:
        def __init__(self, cookies=None, headers=None):
            self.cookies = cookies or {}
            self.headers = headers or {}

    def test_cookie_preferred(self):
        request = self.FakeRequest(cookies={"session_id": "from_cookie"}, headers={"Authorization": "Bearer from_header"})
        assert get_session_id(request) == "from_cookie"

    def test_bearer_header(self):
        assert get_session_id(self.FakeRequest(headers={"Authorization": "Bearer abc"})) == "abc"

    def test_empty_bearer(self):
        assert get_session_id(self.FakeRequest(headers={"Authorization": "Bearer   "})) is None

    def test_other_scheme_ignored(self):
        assert get_session_id(self.FakeRequest(headers={"Authorization": "Basic abc"})) is None
