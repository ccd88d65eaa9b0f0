"""
Submission pipeline for contributions.

Each raw submission passes through the stages in order, and any rejection
stops it before anything is persisted:

    InputValidator -> RateLimiter -> EntityResolver -> ConsensusEngine
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from .config import DAILY_OFFER_ACTION, PRICE_CONTRIBUTION_ACTION, ConsensusConfig
from .consensus import ConflictAdvisory, ConsensusEngine, ResolvedContribution, SubmissionOutcome
from .errors import RateLimitExceeded, ValidationError
from .models import ContributionDatabase, DuplicateScope, resolve_timezone, utc_now
from .rate_limit import RateLimiter
from .resolver import EntityResolver
from .status_store import StatusStore
from .validation import InputValidator, SanitizedContribution

logger = logging.getLogger(__name__)

TABLE_SETTINGS = {
    "daily_offers": (DuplicateScope.PER_DAY, DAILY_OFFER_ACTION),
    "price_contributions": (DuplicateScope.ALL_TIME, PRICE_CONTRIBUTION_ACTION),
}


class SubmissionPipeline:
    """Runs raw payloads through validation, rate limiting, resolution and consensus."""

    def __init__(
        self,
        validator: InputValidator,
        rate_limiter: RateLimiter,
        resolver: EntityResolver,
        engine: ConsensusEngine,
        action: str = DAILY_OFFER_ACTION,
    ):
        self.validator = validator
        self.rate_limiter = rate_limiter
        self.resolver = resolver
        self.engine = engine
        self.action = action

    @classmethod
    def from_config(
        cls,
        config: ConsensusConfig,
        table: str = "daily_offers",
        *,
        rate_limiter: RateLimiter | None = None,
        status_store: StatusStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> "SubmissionPipeline":
        """
        Build a pipeline for one contribution table.

        ``daily_offers`` rejects duplicates per calendar day and
        ``price_contributions`` rejects them for all time. Pass a shared
        ``rate_limiter`` to apply the global thresholds across tables.
        """
        scope, action = TABLE_SETTINGS[table]
        db = ContributionDatabase(config.db_path, table=table)
        return cls(
            validator=InputValidator(
                price_ceiling=config.price_ceiling, spam_policy=config.spam_policy
            ),
            rate_limiter=rate_limiter or RateLimiter(config.rate_limit, config.rules),
            resolver=EntityResolver(db),
            engine=ConsensusEngine(
                db,
                scope=scope,
                status_store=status_store,
                conflict=config.conflict,
                tz=resolve_timezone(config.timezone),
                clock=clock,
            ),
            action=action,
        )

    @property
    def db(self) -> ContributionDatabase:
        return self.engine.db

    def _validate(self, payload: Any) -> SanitizedContribution:
        result = self.validator.validate(payload)
        if not result.ok:
            logger.warning(f"Rejected invalid submission: {len(result.errors)} error(s)")
            raise ValidationError(result.errors)
        return result.sanitized

    async def check_price(self, payload: dict[str, Any]) -> ConflictAdvisory | None:
        """
        Validate a would-be submission and compare its price with today's
        offers from other users. Writes nothing and records no rate-limit
        attempt; the caller decides whether to submit anyway.
        """
        sanitized = self._validate(payload)
        return await self.engine.check_conflict(
            sanitized.user_id,
            sanitized.product_name,
            sanitized.store_name,
            sanitized.city,
            sanitized.price,
        )

    async def submit(
        self, payload: dict[str, Any], contributor_name: str | None = None
    ) -> SubmissionOutcome:
        """
        Process one raw submission.

        Raises ValidationError, RateLimitExceeded, DuplicateSubmissionError
        or DatastoreError.
        """
        sanitized = self._validate(payload)

        decision = self.rate_limiter.check_and_record(sanitized.user_id, self.action)
        if not decision.allowed:
            raise RateLimitExceeded(decision.message, decision.retry_after_seconds)

        product = await self.resolver.resolve_product(
            sanitized.product_name,
            quantity=sanitized.quantity,
            unit=sanitized.unit,
        )
        store = await self.resolver.resolve_store(sanitized.store_name)

        notes = None
        if sanitized.spam_reasons:
            logger.warning(f"Submission by user {sanitized.user_id} flagged as possible spam")
            notes = "Possible spam: " + ", ".join(sanitized.spam_reasons)

        resolved = ResolvedContribution(
            user_id=sanitized.user_id,
            product=product,
            store=store,
            price=sanitized.price,
            city=sanitized.city,
            state=sanitized.state,
            contributor_name=contributor_name,
            quantity=sanitized.quantity,
            unit=sanitized.unit,
            notes=notes,
        )
        return await self.engine.submit(resolved)
