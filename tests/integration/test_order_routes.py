"""Integration tests for buyer order endpoints."""

import uuid
from datetime import timedelta

from fastapi.testclient import TestClient

from marketplace.core.database import utc_now


class TestListOrders:
    """Tests for GET /api/v1/orders."""

    def test_lists_own_orders_newest_first(self, client: TestClient, auth_headers, make_order) -> None:
        user_id = uuid.uuid4()
        base = utc_now() - timedelta(hours=1)
        older = make_order(user_id=user_id, created_at=base)
        newer = make_order(user_id=user_id, created_at=base + timedelta(minutes=5))
        make_order(user_id=uuid.uuid4())

        response = client.get("/api/v1/orders", headers=auth_headers(user_id))

        assert response.status_code == 200
        data = response.json()
        assert [o["id"] for o in data["items"]] == [str(newer.id), str(older.id)]
        assert data["has_more"] is False

    def test_cursor_pagination(self, client: TestClient, auth_headers, make_order) -> None:
        user_id = uuid.uuid4()
        base = utc_now() - timedelta(hours=1)
        for i in range(3):
            make_order(user_id=user_id, created_at=base + timedelta(minutes=i))

        first = client.get("/api/v1/orders", params={"limit": 2}, headers=auth_headers(user_id)).json()
        second = client.get(
            "/api/v1/orders", params={"limit": 2, "cursor": first["next_cursor"]}, headers=auth_headers(user_id)
        ).json()

        assert first["has_more"] is True
        assert len(second["items"]) == 1
        assert second["has_more"] is False

    def test_limit_above_max(self, client: TestClient, auth_headers) -> None:
        response = client.get("/api/v1/orders", params={"limit": 500}, headers=auth_headers(uuid.uuid4()))
        assert response.status_code == 422

    def test_status_filter(self, client: TestClient, auth_headers, make_order) -> None:
        from marketplace.models import OrderStatus

        user_id = uuid.uuid4()
        make_order(user_id=user_id)
        refunded = make_order(user_id=user_id, status=OrderStatus.REFUNDED)

        response = client.get("/api/v1/orders", params={"status": "refunded"}, headers=auth_headers(user_id))

        assert [o["id"] for o in response.json()["items"]] == [str(refunded.id)]

    def test_requires_authentication(self, client: TestClient) -> None:
        assert client.get("/api/v1/orders").status_code == 401


class TestGetOrder:
    """Tests for GET /api/v1/orders/{order_id}."""

    def test_returns_items(self, client: TestClient, auth_headers, make_order, make_product) -> None:
        user_id = uuid.uuid4()
        order = make_order(user_id=user_id, products=[make_product(title="Icon Pack")])

        response = client.get(f"/api/v1/orders/{order.id}", headers=auth_headers(user_id))

        assert response.status_code == 200
        data = response.json()
        assert data["order_number"] == order.order_number
        assert data["items"][0]["product_title"] == "Icon Pack"

    def test_other_users_order(self, client: TestClient, auth_headers, make_order) -> None:
        order = make_order(user_id=uuid.uuid4())

        response = client.get(f"/api/v1/orders/{order.id}", headers=auth_headers(uuid.uuid4()))

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"
