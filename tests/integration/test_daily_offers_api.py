"""Integration tests for /contributions/daily-offers."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

from offer_consensus.errors import DatastoreError
from offer_consensus.models import Contribution, EntityKind, new_id, to_ts

ENDPOINT = "/contributions/daily-offers"


def offer_body(**overrides):
    body = {
        "productName": "Arroz Integral 5kg",
        "storeName": "Supermercado Central",
        "price": 24.9,
        "quantity": 5,
        "unit": "kg",
        "city": "Campinas",
        "state": "SP",
    }
    body.update(overrides)
    return body


class TestSubmitDailyOffer:
    """POST submissions."""

    async def test_requires_actor(self, datasette):
        response = await datasette.client.post(ENDPOINT, json=offer_body())
        assert response.status_code == 401
        assert response.json()["error"] == "Authentication required"

    async def test_first_offer_is_unverified(self, datasette, actor_cookie):
        response = await datasette.client.post(
            ENDPOINT, json=offer_body(), cookies=actor_cookie("user:alice", display="Alice")
        )

        assert response.status_code == 201
        data = response.json()
        assert data["verified"] is False
        assert data["status"] == "pending"
        assert data["productName"] == "Arroz Integral 5kg"
        assert data["contributorName"] == "Alice"
        assert data["userId"] == "user:alice"
        assert data["id"]

    async def test_user_id_comes_from_actor(self, datasette, actor_cookie):
        response = await datasette.client.post(
            ENDPOINT,
            json=offer_body(userId="someone-else"),
            cookies=actor_cookie("user:alice"),
        )
        assert response.json()["userId"] == "user:alice"

    async def test_corroboration_verifies_both(self, datasette, actor_cookie):
        first = await datasette.client.post(ENDPOINT, json=offer_body(), cookies=actor_cookie("user:alice"))
        second = await datasette.client.post(
            ENDPOINT,
            json=offer_body(productName="arroz integral 5 kg"),
            cookies=actor_cookie("user:bob"),
        )

        assert second.status_code == 201
        assert second.json()["verified"] is True

        response = await datasette.client.get(ENDPOINT)
        ids = {o["id"] for o in response.json()}
        assert ids == {first.json()["id"], second.json()["id"]}

    async def test_same_day_duplicate(self, datasette, actor_cookie):
        cookies = actor_cookie("user:alice")
        await datasette.client.post(ENDPOINT, json=offer_body(), cookies=cookies)

        response = await datasette.client.post(ENDPOINT, json=offer_body(price=30), cookies=cookies)

        assert response.status_code == 400
        assert "already contributed" in response.json()["error"]

    async def test_validation_errors(self, datasette, actor_cookie):
        response = await datasette.client.post(
            ENDPOINT,
            json=offer_body(price=0, state="SAO"),
            cookies=actor_cookie("user:alice"),
        )

        assert response.status_code == 400
        data = response.json()
        assert len(data["errors"]) == 2
        assert "error" in data

    async def test_invalid_json(self, datasette, actor_cookie):
        response = await datasette.client.post(
            ENDPOINT,
            content=b"{not json",
            headers={"content-type": "application/json"},
            cookies=actor_cookie("user:alice"),
        )
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid JSON body"

    async def test_divergent_price_is_accepted(self, datasette, actor_cookie):
        first = await datasette.client.post(
            ENDPOINT, json=offer_body(price=10), cookies=actor_cookie("user:alice", display="Alice")
        )

        response = await datasette.client.post(
            ENDPOINT, json=offer_body(price=20), cookies=actor_cookie("user:bob")
        )

        assert response.status_code == 201
        data = response.json()
        assert data["verified"] is True
        assert data["price"] == 20
        listed = await datasette.client.get(ENDPOINT)
        assert {o["id"] for o in listed.json()} == {first.json()["id"], data["id"]}

    async def test_override_field_is_ignored(self, datasette, actor_cookie):
        await datasette.client.post(
            ENDPOINT, json=offer_body(price=10), cookies=actor_cookie("user:alice")
        )

        response = await datasette.client.post(
            ENDPOINT, json=offer_body(price=25, override=False), cookies=actor_cookie("user:bob")
        )

        assert response.status_code == 201
        assert "conflict" not in response.json()

    async def test_datastore_error_is_generic(self, datasette, actor_cookie):
        with patch(
            "offer_consensus.models.ContributionDatabase.find_contributions",
            new_callable=AsyncMock,
            side_effect=DatastoreError("disk I/O error in /secret/path"),
        ):
            response = await datasette.client.post(
                ENDPOINT, json=offer_body(), cookies=actor_cookie("user:alice")
            )

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}

    async def test_method_not_allowed(self, datasette):
        response = await datasette.client.request("DELETE", ENDPOINT)
        assert response.status_code == 405


class TestListDailyOffers:
    """GET listing."""

    async def test_empty(self, datasette):
        response = await datasette.client.get(ENDPOINT)
        assert response.status_code == 200
        assert response.json() == []

    async def test_pending_offers_hidden(self, datasette, actor_cookie):
        await datasette.client.post(ENDPOINT, json=offer_body(), cookies=actor_cookie("user:alice"))

        response = await datasette.client.get(ENDPOINT)

        assert response.json() == []

    async def test_filters_by_city_and_state(self, datasette, actor_cookie):
        for user in ("user:alice", "user:bob"):
            await datasette.client.post(
                ENDPOINT, json=offer_body(city="São Paulo"), cookies=actor_cookie(user)
            )

        response = await datasette.client.get(ENDPOINT, params={"city": "sao paulo", "state": "sp"})
        assert len(response.json()) == 2

        response = await datasette.client.get(ENDPOINT, params={"city": "Campinas"})
        assert response.json() == []

        response = await datasette.client.get(ENDPOINT, params={"state": "RJ"})
        assert response.json() == []

    async def test_expired_offers_excluded(self, datasette, daily_db):
        product = await daily_db.create_entity(EntityKind.PRODUCT, {"name": "Leite"})
        store = await daily_db.create_entity(EntityKind.STORE, {"name": "Padaria"})
        await daily_db.insert_contribution(
            Contribution(
                contribution_id=new_id(),
                user_id="user:old",
                product_id=product.id,
                store_id=store.id,
                price=4.5,
                city="Campinas",
                state="SP",
                created_ts=to_ts(datetime.now(UTC) - timedelta(days=2)),
                status="approved",
            )
        )

        response = await datasette.client.get(ENDPOINT)

        assert response.json() == []
