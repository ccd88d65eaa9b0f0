"""
Datasette plugin exposing the daily-offers contribution API.

Routes:
    GET/POST /contributions/daily-offers                 today's approved offers / submit
    POST     /contributions/daily-offers/check           price advisory, stores nothing
    GET      /contributions/products                     products grouped by variant
    GET/POST /contributions/prices                       own price contributions / submit
    POST     /-/daily-offers/contributions/<id>/status   staff moderation
    GET      /-/daily-offers/statuses                    staff view of the StatusStore
"""

import json
import logging
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from datasette import Response, hookimpl
from datasette.utils.asgi import Request

from offer_consensus.config import PLUGIN_NAME, ConsensusConfig
from offer_consensus.errors import (
    ContributionNotFound,
    DatastoreError,
    DuplicateSubmissionError,
    RateLimitExceeded,
    ValidationError,
)
from offer_consensus.models import (
    ContributionStatus,
    day_window,
    resolve_timezone,
    utc_now,
)
from offer_consensus.normalizer import group_variants, normalize
from offer_consensus.notify import WebhookNotifier
from offer_consensus.pipeline import SubmissionPipeline
from offer_consensus.rate_limit import RateLimiter
from offer_consensus.reaper import ExpiryReaper
from offer_consensus.status_store import StatusStore

logger = logging.getLogger(__name__)

DAILY_OFFERS = "daily_offers"
PRICE_CONTRIBUTIONS = "price_contributions"

# -----------------------------------------------------------------------------
# Plugin Services
# -----------------------------------------------------------------------------


@dataclass
class Services:
    """Per-Datasette instances of the stateful components."""

    config: ConsensusConfig
    status_store: StatusStore
    rate_limiter: RateLimiter
    pipelines: dict[str, SubmissionPipeline] = field(default_factory=dict)
    reaper: ExpiryReaper | None = None
    notifier: WebhookNotifier | None = None
    clock: Any = utc_now


_services: "weakref.WeakKeyDictionary[Any, Services]" = weakref.WeakKeyDictionary()


def get_plugin_config(datasette) -> ConsensusConfig:
    """Get plugin configuration from datasette.yaml."""
    return ConsensusConfig.from_dict(datasette.plugin_config(PLUGIN_NAME) or {})


def ensure_db_exists(config: ConsensusConfig) -> None:
    """Create or upgrade the database schema (idempotent)."""
    from datasette_daily_offers.migrations import run_migrations

    run_migrations(config.db_path, verbose=False)


def build_services(config: ConsensusConfig) -> Services:
    ensure_db_exists(config)

    status_store = StatusStore(max_age=timedelta(hours=config.reaper.retention_hours))
    rate_limiter = RateLimiter(config.rate_limit, config.rules)
    services = Services(config=config, status_store=status_store, rate_limiter=rate_limiter)

    for table in (DAILY_OFFERS, PRICE_CONTRIBUTIONS):
        services.pipelines[table] = SubmissionPipeline.from_config(
            config,
            table,
            rate_limiter=rate_limiter,
            status_store=status_store,
        )

    services.reaper = ExpiryReaper(
        services.pipelines[DAILY_OFFERS].db,
        status_store=status_store,
        config=config.reaper,
    )

    if config.notifications.webhook_url:
        services.notifier = WebhookNotifier(
            config.notifications.webhook_url,
            timeout=config.notifications.timeout_seconds,
        )
        status_store.subscribe(services.notifier)

    return services


def get_services(datasette) -> Services:
    """The Services owned by ``datasette``, built on first use."""
    services = _services.get(datasette)
    if services is None:
        services = _services[datasette] = build_services(get_plugin_config(datasette))
    return services


# -----------------------------------------------------------------------------
# Request Helpers
# -----------------------------------------------------------------------------


def get_contributor(request: Request) -> dict | None:
    """The authenticated actor, if it has an id."""
    actor = request.actor
    if actor and actor.get("id"):
        return actor
    return None


def is_staff(request: Request) -> bool:
    """Check if the current user is staff."""
    actor = request.actor
    return actor is not None and actor.get("principal_type") == "staff"


def error_response(message: str, status: int, **extra) -> Response:
    return Response.json({"error": message, **extra}, status=status)


async def read_json_body(request: Request) -> Any:
    body = await request.post_body()
    if not body:
        return {}
    return json.loads(body)


async def submit_contribution(request: Request, datasette, table: str) -> Response:
    """Shared POST handler for both contribution tables."""
    actor = get_contributor(request)
    if actor is None:
        return error_response("Authentication required", 401)

    try:
        payload = await read_json_body(request)
    except (ValueError, UnicodeDecodeError):
        return error_response("Invalid JSON body", 400)

    if isinstance(payload, dict):
        payload["userId"] = str(actor["id"])

    pipeline = get_services(datasette).pipelines[table]
    try:
        outcome = await pipeline.submit(
            payload,
            contributor_name=actor.get("display") or actor.get("name"),
        )
    except ValidationError as e:
        return error_response(e.message, 400, errors=e.errors)
    except DuplicateSubmissionError as e:
        return error_response(e.message, 400)
    except RateLimitExceeded as e:
        headers = {}
        if e.retry_after_seconds is not None:
            headers["Retry-After"] = str(e.retry_after_seconds)
        return Response.json({"error": e.message}, status=429, headers=headers)
    except DatastoreError:
        logger.exception(f"Datastore failure while submitting to {table}")
        return error_response("Internal server error", 500)

    return Response.json(outcome.offer.to_dict(), status=201)


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------


async def daily_offers(request: Request, datasette) -> Response:
    """
    GET: approved offers for the current calendar day, still inside the
    retention window, optionally filtered by ``city`` and ``state``.

    POST: submit a daily offer.
    """
    if request.method == "POST":
        return await submit_contribution(request, datasette, DAILY_OFFERS)
    if request.method != "GET":
        return error_response("Method not allowed", 405)

    services = get_services(datasette)
    config = services.config
    now: datetime = services.clock()
    window = day_window(now, resolve_timezone(config.timezone))
    since = max(window.start, now - timedelta(hours=config.reaper.retention_hours))

    try:
        offers = await services.pipelines[DAILY_OFFERS].db.list_offers(
            since=since,
            until=window.end,
            statuses=[ContributionStatus.APPROVED],
            city=request.args.get("city") or None,
            state=request.args.get("state") or None,
        )
    except DatastoreError:
        logger.exception("Datastore failure while listing daily offers")
        return error_response("Internal server error", 500)

    return Response.json([offer.to_dict() for offer in offers])


async def check_daily_offer_price(request: Request, datasette) -> Response:
    """
    POST: compare a would-be daily offer's price with today's offers from
    other users. Always 200 for a valid body; ``conflict`` is null when the
    price is in line. Nothing is stored.
    """
    if request.method != "POST":
        return error_response("Method not allowed", 405)

    actor = get_contributor(request)
    if actor is None:
        return error_response("Authentication required", 401)

    try:
        payload = await read_json_body(request)
    except (ValueError, UnicodeDecodeError):
        return error_response("Invalid JSON body", 400)
    if isinstance(payload, dict):
        payload["userId"] = str(actor["id"])

    try:
        conflict = await get_services(datasette).pipelines[DAILY_OFFERS].check_price(payload)
    except ValidationError as e:
        return error_response(e.message, 400, errors=e.errors)
    except DatastoreError:
        logger.exception("Datastore failure while checking a daily offer price")
        return error_response("Internal server error", 500)

    if conflict is None:
        return Response.json({"conflict": None})
    return Response.json({"conflict": conflict.to_dict(), "message": conflict.message})


async def products(request: Request, datasette) -> Response:
    """
    GET: canonical products grouped by normalized name, so near-identical
    entries ("Arroz 5kg", "arroz 1 kg") show up as variants of one item.
    ``q`` narrows to groups whose normalized name contains it.
    """
    if request.method != "GET":
        return error_response("Method not allowed", 405)

    db = get_services(datasette).pipelines[DAILY_OFFERS].db
    try:
        groups = group_variants(await db.list_products())
    except DatastoreError:
        logger.exception("Datastore failure while listing products")
        return error_response("Internal server error", 500)

    query = normalize(request.args.get("q") or "")
    if query:
        groups = [g for g in groups if query in g.normalized_name]
    groups.sort(key=lambda g: g.normalized_name)

    return Response.json({"products": [g.to_dict() for g in groups]})


async def price_contributions(request: Request, datasette) -> Response:
    """
    GET: the caller's own price contributions, newest first.

    POST: submit a price contribution (one per user per product and store, ever).
    """
    if request.method == "POST":
        return await submit_contribution(request, datasette, PRICE_CONTRIBUTIONS)
    if request.method != "GET":
        return error_response("Method not allowed", 405)

    actor = get_contributor(request)
    if actor is None:
        return error_response("Authentication required", 401)

    db = get_services(datasette).pipelines[PRICE_CONTRIBUTIONS].db
    try:
        offers = await db.list_offers(user_id=str(actor["id"]))
    except DatastoreError:
        logger.exception("Datastore failure while listing price contributions")
        return error_response("Internal server error", 500)

    return Response.json([offer.to_dict() for offer in offers])


async def staff_contribution_status(request: Request, datasette) -> Response:
    """Staff route to approve or reject a contribution."""
    if not is_staff(request):
        return error_response("Forbidden", 403)

    if request.method != "POST":
        return error_response("Method not allowed", 405)

    contribution_id = request.url_vars.get("contribution_id")
    if not contribution_id:
        return error_response("Missing contribution_id", 400)

    table = request.args.get("table") or DAILY_OFFERS
    services = get_services(datasette)
    if table not in services.pipelines:
        return error_response(f"Unknown table: {table}", 400)

    try:
        body = await read_json_body(request)
    except (ValueError, UnicodeDecodeError):
        return error_response("Invalid JSON body", 400)
    if not isinstance(body, dict):
        return error_response("Invalid JSON body", 400)

    engine = services.pipelines[table].engine
    try:
        contribution = await engine.moderate(
            contribution_id,
            body.get("status", ""),
            notes=body.get("notes") or None,
        )
    except ValidationError as e:
        return error_response(e.message, 400, errors=e.errors)
    except ContributionNotFound as e:
        return error_response(e.message, 404)
    except DatastoreError:
        logger.exception(f"Datastore failure while moderating {contribution_id}")
        return error_response("Internal server error", 500)

    logger.info(f"Staff {request.actor.get('id')} set {contribution_id} to {contribution.status}")
    return Response.json(
        {
            "id": contribution.contribution_id,
            "status": contribution.status,
            "updatedAt": contribution.updated_ts,
        }
    )


async def staff_statuses(request: Request, datasette) -> Response:
    """Staff route listing the in-process status records."""
    if not is_staff(request):
        return error_response("Forbidden", 403)

    records = get_services(datasette).status_store.list_all()
    return Response.json({"statuses": [record.to_dict() for record in records]})


# -----------------------------------------------------------------------------
# Datasette Hooks
# -----------------------------------------------------------------------------


@hookimpl
def register_routes():
    """Register plugin routes with Datasette."""
    return [
        (r"^/contributions/daily-offers$", daily_offers),
        (r"^/contributions/daily-offers/check$", check_daily_offer_price),
        (r"^/contributions/products$", products),
        (r"^/contributions/prices$", price_contributions),
        # Staff routes
        (
            r"^/-/daily-offers/contributions/(?P<contribution_id>[^/]+)/status$",
            staff_contribution_status,
        ),
        (r"^/-/daily-offers/statuses$", staff_statuses),
    ]


@hookimpl
def skip_csrf(datasette, scope):
    """
    Skip CSRF for the JSON API routes.

    They take JSON bodies from API clients and check the actor themselves.
    """
    path = scope.get("path", "")
    if path.startswith("/contributions/"):
        return True
    if path.startswith("/-/daily-offers/"):
        return True
    return None


@hookimpl
def startup(datasette):
    """
    Run on Datasette startup.

    Applies migrations, builds the per-instance services and starts the
    expiry reaper when enabled.
    """

    async def inner():
        services = get_services(datasette)
        if services.config.reaper.enabled and services.reaper is not None:
            services.reaper.start()
        logger.info(f"Daily offers database: {services.config.db_path}")

    return inner


@hookimpl
def shutdown(datasette):
    """
    Run when the Datasette server shuts down.

    Stops the expiry reaper and waits for in-flight webhook deliveries.
    """

    async def inner():
        services = _services.get(datasette)
        if services is None:
            return
        if services.reaper is not None:
            await services.reaper.stop()
        if services.notifier is not None:
            await services.notifier.drain()
        logger.info("Daily offers services stopped")

    return inner
