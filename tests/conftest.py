"""Shared pytest fixtures for daily-offers tests."""

import pytest
from datasette.app import Datasette

from datasette_daily_offers.migrations import run_migrations
from offer_consensus.models import ContributionDatabase


@pytest.fixture
def db_path(tmp_path):
    """Create a temporary database with full schema via migrations.

    This is the canonical way to get a test database - uses the same
    migration system as production.
    """
    db_file = tmp_path / "test_offers.db"
    run_migrations(db_file, verbose=False)
    return db_file


@pytest.fixture
def daily_db(db_path):
    return ContributionDatabase(db_path, table="daily_offers")


@pytest.fixture
def prices_db(db_path):
    return ContributionDatabase(db_path, table="price_contributions")


@pytest.fixture
def plugin_config(db_path):
    """Plugin config for tests: UTC day window, no background reaper."""
    return {
        "db_path": str(db_path),
        "timezone": "UTC",
        "reaper": {"enabled": False},
    }


@pytest.fixture
def datasette(db_path, plugin_config):
    """Create a Datasette instance with the plugin configured.

    Uses config= (not metadata=) for Datasette v1 compatibility.
    """
    return Datasette(
        [str(db_path)],
        config={"plugins": {"datasette-daily-offers": plugin_config}},
    )


@pytest.fixture
def actor_cookie(datasette):
    """Factory for signed ds_actor cookies."""

    def make(actor_id, display=None, principal_type="user"):
        actor = {"id": actor_id, "principal_type": principal_type}
        if display:
            actor["display"] = display
        return {"ds_actor": datasette.sign({"a": actor}, "actor")}

    return make


@pytest.fixture
def staff_cookie(actor_cookie):
    return actor_cookie("staff:jsmith", display="Jane Smith", principal_type="staff")
