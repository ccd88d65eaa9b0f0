"""
Consensus engine: duplicate rejection, corroboration approval and cascade,
plus a read-only price-conflict advisory.

Submission order for a resolved contribution:

1. Duplicate check: the same user already holds a non-rejected
   contribution for the (product, store) pair, within the calendar day
   (DuplicateScope.PER_DAY) or ever (DuplicateScope.ALL_TIME).
2. Corroboration: another user's non-rejected contribution for the same
   pair today approves the new one and cascades approval to every pending
   sibling for that (product, store, day). Only the presence of that
   contribution counts, never its price.

The conflict advisory (check_conflict) is a separate pre-check a client
may run before submitting; submit() never consults it.

The sequence is read-then-write with no transaction around it; two
concurrent first submissions may both land as pending.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, tzinfo
from typing import Any

from .config import ConflictConfig
from .errors import ContributionNotFound, DuplicateSubmissionError, ValidationError
from .models import (
    NON_REJECTED,
    Contribution,
    ContributionDatabase,
    ContributionStatus,
    DuplicateScope,
    Offer,
    Product,
    Store,
    day_window,
    new_id,
    to_ts,
    utc_now,
)
from .normalizer import compact, contains_either_direction
from .status_store import StatusStore

logger = logging.getLogger(__name__)

DUPLICATE_MESSAGES = {
    DuplicateScope.PER_DAY: "You already contributed this offer today",
    DuplicateScope.ALL_TIME: "You already contributed a price for this product at this store",
}


@dataclass
class ResolvedContribution:
    """A validated submission whose product and store have been resolved."""

    user_id: str
    product: Product
    store: Store
    price: float
    city: str
    state: str
    contributor_name: str | None = None
    quantity: float | None = None
    unit: str | None = None
    notes: str | None = None


@dataclass
class ConflictAdvisory:
    """A similar offer from another user with a divergent price."""

    conflicting_price: float
    conflicting_contributor: str
    price_difference_percent: float
    conflicting_id: str | None = None

    @property
    def message(self) -> str:
        return (
            f"Price differs by {self.price_difference_percent:.0f}% from an offer of "
            f"{self.conflicting_price:.2f} reported by {self.conflicting_contributor}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "conflictingPrice": self.conflicting_price,
            "conflictingContributor": self.conflicting_contributor,
            "priceDifferencePercent": round(self.price_difference_percent, 2),
        }


@dataclass
class SubmissionOutcome:
    """Result of ConsensusEngine.submit(). Rejections raise instead."""

    contribution: Contribution
    offer: Offer
    cascaded_ids: list[str] = field(default_factory=list)

    @property
    def status(self) -> ContributionStatus:
        return ContributionStatus(self.contribution.status)

    @property
    def verified(self) -> bool:
        return self.status is ContributionStatus.APPROVED


def price_difference_percent(new_price: float, existing_price: float) -> float:
    return abs(new_price - existing_price) * 100 / existing_price


class ConsensusEngine:
    """Decides the status of resolved contributions for one contribution table."""

    def __init__(
        self,
        db: ContributionDatabase,
        *,
        scope: DuplicateScope = DuplicateScope.PER_DAY,
        status_store: StatusStore | None = None,
        conflict: ConflictConfig | None = None,
        tz: tzinfo | None = UTC,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.scope = DuplicateScope(scope)
        self.status_store = status_store
        self.conflict = conflict or ConflictConfig()
        self.tz = tz
        self.clock = clock

    async def check_duplicate(self, resolved: ResolvedContribution, now: datetime) -> None:
        """Raise DuplicateSubmissionError if the user already holds this pair."""
        window = day_window(now, self.tz) if self.scope is DuplicateScope.PER_DAY else None
        existing = await self.db.find_contributions(
            resolved.product.id,
            resolved.store.id,
            window=window,
            user_id=resolved.user_id,
            statuses=NON_REJECTED,
        )
        if existing:
            logger.warning(
                f"Duplicate submission by user {resolved.user_id} "
                f"(existing {existing[0].contribution_id}, scope {self.scope.value})"
            )
            raise DuplicateSubmissionError(
                DUPLICATE_MESSAGES[self.scope],
                existing_id=existing[0].contribution_id,
            )

    async def check_conflict(
        self,
        user_id: str,
        product_name: str,
        store_name: str,
        city: str,
        price: float,
    ) -> ConflictAdvisory | None:
        """
        Compare a proposed price against today's offers from other users.

        The first offer whose store and product names contain each other
        (either direction) in the same city decides; an advisory is
        returned when its price differs by more than the threshold.
        Read-only: nothing is written and no status changes.
        """
        if not self.conflict.enabled:
            return None

        window = day_window(self.clock(), self.tz)
        offers = await self.db.list_offers(
            since=window.start,
            until=window.end,
            statuses=NON_REJECTED,
            exclude_user_id=user_id,
        )
        wanted_city = compact(city)
        for offer in offers:
            if (
                contains_either_direction(offer.store_name, store_name)
                and contains_either_direction(offer.product_name, product_name)
                and compact(offer.city) == wanted_city
            ):
                difference = price_difference_percent(price, offer.price)
                if difference <= self.conflict.threshold_percent:
                    return None
                logger.info(
                    f"Price advisory for user {user_id}: "
                    f"{difference:.1f}% against {offer.contribution_id}"
                )
                return ConflictAdvisory(
                    conflicting_price=offer.price,
                    conflicting_contributor=offer.contributor_name or "Anonymous",
                    price_difference_percent=difference,
                    conflicting_id=offer.contribution_id,
                )
        return None

    async def submit(self, resolved: ResolvedContribution) -> SubmissionOutcome:
        """
        Run the duplicate and corroboration steps and persist.

        Raises DuplicateSubmissionError or DatastoreError. Price divergence
        never blocks a submission.
        """
        now = self.clock()
        await self.check_duplicate(resolved, now)

        window = day_window(now, self.tz)
        corroborating = await self.db.find_contributions(
            resolved.product.id,
            resolved.store.id,
            window=window,
            exclude_user_id=resolved.user_id,
            statuses=NON_REJECTED,
        )
        status = ContributionStatus.APPROVED if corroborating else ContributionStatus.PENDING

        contribution = Contribution(
            contribution_id=new_id(),
            user_id=resolved.user_id,
            product_id=resolved.product.id,
            store_id=resolved.store.id,
            price=resolved.price,
            city=resolved.city,
            state=resolved.state,
            created_ts=to_ts(now),
            status=status.value,
            contributor_name=resolved.contributor_name,
            quantity=resolved.quantity,
            unit=resolved.unit,
            notes=resolved.notes,
        )
        await self.db.insert_contribution(contribution)

        cascaded_ids: list[str] = []
        if status is ContributionStatus.APPROVED:
            cascaded_ids = await self._cascade(contribution, window)

        logger.info(
            f"Contribution {contribution.contribution_id} by user {resolved.user_id} "
            f"stored as {status.value}"
            + (f", cascaded {len(cascaded_ids)}" if cascaded_ids else "")
        )

        if self.status_store is not None:
            self.status_store.set_status(contribution.contribution_id, status)
            for cid in cascaded_ids:
                self.status_store.set_status(cid, ContributionStatus.APPROVED)

        offer = Offer(
            contribution_id=contribution.contribution_id,
            user_id=contribution.user_id,
            contributor_name=contribution.contributor_name,
            product_id=resolved.product.id,
            product_name=resolved.product.name,
            store_id=resolved.store.id,
            store_name=resolved.store.name,
            price=contribution.price,
            city=contribution.city,
            state=contribution.state,
            status=contribution.status,
            created_ts=contribution.created_ts,
            quantity=contribution.quantity,
            unit=contribution.unit,
            notes=contribution.notes,
        )
        return SubmissionOutcome(contribution=contribution, offer=offer, cascaded_ids=cascaded_ids)

    async def _cascade(self, contribution: Contribution, window) -> list[str]:
        """Approve every pending sibling of ``contribution`` in ``window``."""
        pending = await self.db.find_contributions(
            contribution.product_id,
            contribution.store_id,
            window=window,
            statuses=[ContributionStatus.PENDING],
        )
        ids = [c.contribution_id for c in pending if c.contribution_id != contribution.contribution_id]
        if ids:
            await self.db.update_contributions_status(
                ids,
                ContributionStatus.APPROVED,
                notes=f"Corroborated by {contribution.contribution_id}",
                updated_ts=contribution.created_ts,
            )
        return ids

    async def moderate(
        self, contribution_id: str, status: ContributionStatus | str, notes: str | None = None
    ) -> Contribution:
        """
        Manually approve or reject a contribution.

        Raises ValidationError for any other target status and
        ContributionNotFound for an unknown id.
        """
        try:
            status = ContributionStatus(status)
        except ValueError:
            status = None
        if status not in (ContributionStatus.APPROVED, ContributionStatus.REJECTED):
            raise ValidationError(["Status must be 'approved' or 'rejected'"])

        contribution = await self.db.get_contribution(contribution_id)
        if contribution is None:
            raise ContributionNotFound(f"Contribution not found: {contribution_id}")

        updated_ts = to_ts(self.clock())
        await self.db.update_contributions_status(
            [contribution_id], status, notes=notes, updated_ts=updated_ts
        )
        logger.info(f"Contribution {contribution_id} moderated to {status.value}")

        if self.status_store is not None:
            self.status_store.set_status(contribution_id, status)

        contribution.status = status.value
        contribution.updated_ts = updated_ts
        if notes is not None:
            contribution.notes = notes
        return contribution
