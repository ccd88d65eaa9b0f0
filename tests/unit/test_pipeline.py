"""Tests for the submission pipeline wiring."""

from datetime import UTC, datetime

import pytest

from offer_consensus.config import ConsensusConfig
from offer_consensus.errors import DuplicateSubmissionError, RateLimitExceeded, ValidationError
from offer_consensus.models import ContributionStatus, DuplicateScope
from offer_consensus.pipeline import SubmissionPipeline
from offer_consensus.status_store import StatusStore

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def make_payload(user_id, **overrides):
    payload = {
        "productName": "Feijão Carioca 1kg",
        "storeName": "Mercado Bom Preço",
        "price": 8.49,
        "quantity": 1,
        "unit": "kg",
        "city": "Recife",
        "state": "PE",
        "userId": user_id,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def config(db_path):
    return ConsensusConfig.from_dict({"db_path": str(db_path), "timezone": "UTC"})


class TestSubmissionPipeline:
    """End-to-end runs through validator, limiter, resolver and engine."""

    async def test_accepts_and_corroborates(self, config):
        store = StatusStore()
        pipeline = SubmissionPipeline.from_config(config, status_store=store, clock=lambda: NOW)

        first = await pipeline.submit(make_payload("alice"), contributor_name="Alice")
        second = await pipeline.submit(make_payload("bob", productName="feijão carioca 1 kg"))

        assert first.status is ContributionStatus.PENDING
        assert second.status is ContributionStatus.APPROVED
        assert second.contribution.product_id == first.contribution.product_id
        assert second.cascaded_ids == [first.contribution.contribution_id]
        assert first.offer.to_dict()["contributorName"] == "Alice"
        assert store.get_status(first.contribution.contribution_id) is ContributionStatus.APPROVED

    async def test_validation_error_short_circuits(self, config):
        pipeline = SubmissionPipeline.from_config(config, clock=lambda: NOW)

        with pytest.raises(ValidationError) as exc_info:
            await pipeline.submit(make_payload("alice", price=0, state="Pernambuco"))

        assert len(exc_info.value.errors) == 2
        assert await pipeline.db.list_products() == []

    async def test_rate_limit_checked_before_resolution(self, config):
        pipeline = SubmissionPipeline.from_config(config, clock=lambda: NOW)

        for name in ["Alfa", "Beta", "Gama", "Delta", "Sigma"]:
            await pipeline.submit(make_payload("alice", storeName=f"Mercado {name}"))

        with pytest.raises(RateLimitExceeded) as exc_info:
            await pipeline.submit(make_payload("alice", storeName="Mercado Novo"))

        assert exc_info.value.retry_after_seconds is not None
        stores = {o.store_name for o in await pipeline.db.list_offers()}
        assert "Mercado Novo" not in stores

    async def test_duplicate_propagates(self, config):
        pipeline = SubmissionPipeline.from_config(config, clock=lambda: NOW)
        await pipeline.submit(make_payload("alice"))

        with pytest.raises(DuplicateSubmissionError):
            await pipeline.submit(make_payload("alice", price=9.99))

    async def test_spam_flag_recorded_in_notes(self, config):
        pipeline = SubmissionPipeline.from_config(config, clock=lambda: NOW)

        outcome = await pipeline.submit(
            make_payload("alice", productName="FEIJAO www.feijao.com 4002")
        )

        assert outcome.status is ContributionStatus.PENDING
        stored = await pipeline.db.get_contribution(outcome.contribution.contribution_id)
        assert stored.notes.startswith("Possible spam")

    async def test_prices_table_uses_all_time_scope(self, config):
        pipeline = SubmissionPipeline.from_config(config, "price_contributions", clock=lambda: NOW)

        assert pipeline.engine.scope is DuplicateScope.ALL_TIME
        assert pipeline.action == "price_contribution"
        assert pipeline.db.table == "price_contributions"

    async def test_unknown_table(self, config):
        with pytest.raises(KeyError):
            SubmissionPipeline.from_config(config, "shopping_lists")


class TestCheckPrice:
    """Price pre-check ahead of a submission."""

    async def test_reports_divergent_price(self, config):
        pipeline = SubmissionPipeline.from_config(config, clock=lambda: NOW)
        await pipeline.submit(make_payload("alice", price=10.0), contributor_name="Alice")

        conflict = await pipeline.check_price(make_payload("bob", price=25.0))

        assert conflict.conflicting_contributor == "Alice"
        assert conflict.price_difference_percent == pytest.approx(150)

    async def test_writes_nothing_and_spends_no_attempts(self, config):
        pipeline = SubmissionPipeline.from_config(config, clock=lambda: NOW)
        await pipeline.submit(make_payload("alice", price=10.0))

        for _ in range(10):
            await pipeline.check_price(make_payload("bob", price=25.0))

        assert len(await pipeline.db.list_offers()) == 1
        outcome = await pipeline.submit(make_payload("bob", price=25.0))
        assert outcome.status is ContributionStatus.APPROVED

    async def test_invalid_payload_raises(self, config):
        pipeline = SubmissionPipeline.from_config(config, clock=lambda: NOW)

        with pytest.raises(ValidationError):
            await pipeline.check_price(make_payload("bob", price=-1))
