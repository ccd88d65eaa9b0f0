"""
Data models and database operations for the contribution consensus engine.
"""

import asyncio
import secrets
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, time, timedelta, tzinfo
from enum import Enum
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

from .errors import DatastoreError
from .normalizer import normalize

DEFAULT_UNIT = "unidade"
DEFAULT_CATEGORY = "outros"

CONTRIBUTION_TABLES = ("daily_offers", "price_contributions")


class ContributionStatus(str, Enum):
    """Lifecycle state of a contribution."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


NON_REJECTED = (ContributionStatus.PENDING, ContributionStatus.APPROVED)


class DuplicateScope(str, Enum):
    """How far back the one-contribution-per-user rule looks."""

    PER_DAY = "per_day"
    ALL_TIME = "all_time"


class EntityKind(str, Enum):
    """Canonical entity kinds managed by the resolver."""

    PRODUCT = "product"
    STORE = "store"


# -----------------------------------------------------------------------------
# Time helpers
# -----------------------------------------------------------------------------


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_ts(dt: datetime) -> str:
    """Serialize an aware datetime as a sortable UTC ISO string."""
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def parse_ts(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def resolve_timezone(name: str | None) -> tzinfo | None:
    """
    Map a config timezone name to a tzinfo.

    None means the host's local zone. It is returned as None rather than a
    fixed offset so day_window() looks the offset up for each date.
    """
    if not name:
        return None
    if name.upper() == "UTC":
        return UTC
    return ZoneInfo(name)


@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval [start, end)."""

    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


def day_window(now: datetime, tz: tzinfo | None) -> TimeWindow:
    """
    The calendar day containing ``now`` in ``tz``: local midnight to next midnight.

    ``tz=None`` uses the host's local zone, with each midnight resolved at
    its own UTC offset.
    """
    if tz is None:
        local_date = now.astimezone().date()
        # Naive datetimes convert through the host's zone rules for that date
        start = datetime.combine(local_date, time.min).astimezone()
        end = datetime.combine(local_date + timedelta(days=1), time.min).astimezone()
    else:
        local_date = now.astimezone(tz).date()
        start = datetime.combine(local_date, time.min, tzinfo=tz)
        end = datetime.combine(local_date + timedelta(days=1), time.min, tzinfo=tz)
    return TimeWindow(start=start.astimezone(UTC), end=end.astimezone(UTC))


def new_id() -> str:
    return secrets.token_hex(16)


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------


@dataclass
class Product:
    """Canonical product entity. Identity is permanent once created."""

    id: str
    name: str
    quantity: float = 1
    unit: str = DEFAULT_UNIT
    category: str = DEFAULT_CATEGORY
    created_ts: str | None = None

    @property
    def normalized_name(self) -> str:
        return normalize(self.name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "quantity": self.quantity,
            "unit": self.unit,
            "category": self.category,
            "createdAt": self.created_ts,
        }


@dataclass
class Store:
    """Canonical store entity."""

    id: str
    name: str
    created_ts: str | None = None

    @property
    def normalized_name(self) -> str:
        return normalize(self.name)


@dataclass
class Contribution:
    """A single user's price claim for a (product, store) pair."""

    contribution_id: str
    user_id: str
    product_id: str
    store_id: str
    price: float
    city: str
    state: str
    created_ts: str
    status: str = ContributionStatus.PENDING.value
    contributor_name: str | None = None
    quantity: float | None = None
    unit: str | None = None
    notes: str | None = None
    updated_ts: str | None = None

    @property
    def created_at(self) -> datetime:
        return parse_ts(self.created_ts)


@dataclass
class Offer:
    """A contribution joined with its product and store names."""

    contribution_id: str
    user_id: str
    contributor_name: str | None
    product_id: str
    product_name: str
    store_id: str
    store_name: str
    price: float
    city: str
    state: str
    status: str
    created_ts: str
    quantity: float | None = None
    unit: str | None = None
    notes: str | None = None

    @property
    def verified(self) -> bool:
        return self.status == ContributionStatus.APPROVED.value

    def to_dict(self) -> dict[str, Any]:
        """API representation of a daily offer."""
        return {
            "id": self.contribution_id,
            "productName": self.product_name,
            "price": self.price,
            "storeName": self.store_name,
            "city": self.city,
            "state": self.state,
            "contributorName": self.contributor_name or "Anonymous",
            "userId": self.user_id,
            "timestamp": self.created_ts,
            "verified": self.verified,
            "status": self.status,
            "quantity": self.quantity,
            "unit": self.unit,
        }


def _status_values(statuses: Iterable[ContributionStatus | str]) -> list[str]:
    return [ContributionStatus(s).value for s in statuses]


# -----------------------------------------------------------------------------
# Datastore
# -----------------------------------------------------------------------------


def _casefold_contains(haystack: str | None, needle: str | None) -> int:
    if haystack is None or needle is None:
        return 0
    return int(needle.casefold() in haystack.casefold())


def _normalize_sql(value: str | None) -> str:
    return normalize(value or "")


OFFER_COLUMNS = """
    c.contribution_id, c.user_id, c.contributor_name,
    c.product_id, p.name AS product_name,
    c.store_id, s.name AS store_name,
    c.price, c.city, c.state, c.status, c.created_ts,
    c.quantity, c.unit, c.notes
"""


class ContributionDatabase:
    """
    SQLite implementation of the datastore collaborator.

    One instance targets one contribution table; products and stores are
    shared. Public methods are coroutines that run the blocking sqlite3
    work in a worker thread, opening a connection per operation.
    """

    def __init__(self, db_path: Path, table: str = "daily_offers"):
        if table not in CONTRIBUTION_TABLES:
            raise ValueError(f"Unknown contribution table: {table}")
        self.db_path = Path(db_path)
        self.table = table

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.create_function("casefold_contains", 2, _casefold_contains, deterministic=True)
        conn.create_function("normalize_name", 1, _normalize_sql, deterministic=True)
        return conn

    async def _run(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except sqlite3.Error as e:
            raise DatastoreError(f"Datastore failure on {self.table}: {e}") from e

    # -------------------------------------------------------------------------
    # Entities
    # -------------------------------------------------------------------------

    def _find_entities(self, kind: EntityKind, contains_name: str) -> list[Product | Store]:
        table = "products" if kind is EntityKind.PRODUCT else "stores"
        conn = self._connect()
        try:
            cursor = conn.execute(
                f"""
                SELECT * FROM {table}
                WHERE casefold_contains(name, ?) OR normalize_name(name) = ?
                ORDER BY created_ts ASC
                """,
                (contains_name, normalize(contains_name)),
            )
            rows = [dict(row) for row in cursor.fetchall()]
        finally:
            conn.close()
        if kind is EntityKind.PRODUCT:
            return [Product(**row) for row in rows]
        return [Store(**row) for row in rows]

    async def find_entities(self, kind: EntityKind, contains_name: str) -> list[Product | Store]:
        """Entities whose name contains ``contains_name`` (case-insensitive) or normalizes to it."""
        return await self._run(self._find_entities, EntityKind(kind), contains_name)

    def _create_entity(self, kind: EntityKind, fields: dict[str, Any]) -> Product | Store:
        now = to_ts(utc_now())
        conn = self._connect()
        try:
            if kind is EntityKind.PRODUCT:
                entity: Product | Store = Product(
                    id=new_id(),
                    name=fields["name"],
                    quantity=fields.get("quantity") or 1,
                    unit=fields.get("unit") or DEFAULT_UNIT,
                    category=fields.get("category") or DEFAULT_CATEGORY,
                    created_ts=now,
                )
                conn.execute(
                    """
                    INSERT INTO products (id, name, quantity, unit, category, created_ts)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entity.id,
                        entity.name,
                        entity.quantity,
                        entity.unit,
                        entity.category,
                        entity.created_ts,
                    ),
                )
            else:
                entity = Store(id=new_id(), name=fields["name"], created_ts=now)
                conn.execute(
                    "INSERT INTO stores (id, name, created_ts) VALUES (?, ?, ?)",
                    (entity.id, entity.name, entity.created_ts),
                )
            conn.commit()
        finally:
            conn.close()
        return entity

    async def create_entity(self, kind: EntityKind, fields: dict[str, Any]) -> Product | Store:
        """Create a product or store from ``fields`` (name, and for products quantity/unit)."""
        return await self._run(self._create_entity, EntityKind(kind), fields)

    def _list_products(self) -> list[Product]:
        conn = self._connect()
        try:
            cursor = conn.execute("SELECT * FROM products ORDER BY created_ts ASC")
            return [Product(**dict(row)) for row in cursor.fetchall()]
        finally:
            conn.close()

    async def list_products(self) -> list[Product]:
        return await self._run(self._list_products)

    # -------------------------------------------------------------------------
    # Contributions
    # -------------------------------------------------------------------------

    def _get_contribution(self, contribution_id: str) -> Contribution | None:
        conn = self._connect()
        try:
            cursor = conn.execute(
                f"SELECT * FROM {self.table} WHERE contribution_id = ?",
                (contribution_id,),
            )
            row = cursor.fetchone()
            return Contribution(**dict(row)) if row else None
        finally:
            conn.close()

    async def get_contribution(self, contribution_id: str) -> Contribution | None:
        return await self._run(self._get_contribution, contribution_id)

    def _find_contributions(
        self,
        product_id: str,
        store_id: str,
        window: TimeWindow | None,
        user_id: str | None,
        exclude_user_id: str | None,
        statuses: list[str] | None,
    ) -> list[Contribution]:
        clauses = ["product_id = ?", "store_id = ?"]
        params: list[Any] = [product_id, store_id]
        if window is not None:
            clauses.append("created_ts >= ? AND created_ts < ?")
            params.extend([to_ts(window.start), to_ts(window.end)])
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if exclude_user_id is not None:
            clauses.append("user_id != ?")
            params.append(exclude_user_id)
        if statuses:
            clauses.append("status IN ({})".format(",".join("?" * len(statuses))))
            params.extend(statuses)

        conn = self._connect()
        try:
            cursor = conn.execute(
                f"SELECT * FROM {self.table} WHERE {' AND '.join(clauses)} ORDER BY created_ts ASC",
                params,
            )
            return [Contribution(**dict(row)) for row in cursor.fetchall()]
        finally:
            conn.close()

    async def find_contributions(
        self,
        product_id: str,
        store_id: str,
        *,
        window: TimeWindow | None = None,
        user_id: str | None = None,
        exclude_user_id: str | None = None,
        statuses: Iterable[ContributionStatus | str] | None = None,
    ) -> list[Contribution]:
        """Contributions for a (product, store) pair, optionally narrowed."""
        return await self._run(
            self._find_contributions,
            product_id,
            store_id,
            window,
            user_id,
            exclude_user_id,
            _status_values(statuses) if statuses is not None else None,
        )

    def _insert_contribution(self, contribution: Contribution) -> str:
        conn = self._connect()
        try:
            conn.execute(
                f"""
                INSERT INTO {self.table}
                    (contribution_id, user_id, contributor_name, product_id, store_id,
                     price, quantity, unit, city, state, status, notes, created_ts, updated_ts)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    contribution.contribution_id,
                    contribution.user_id,
                    contribution.contributor_name,
                    contribution.product_id,
                    contribution.store_id,
                    contribution.price,
                    contribution.quantity,
                    contribution.unit,
                    contribution.city,
                    contribution.state,
                    contribution.status,
                    contribution.notes,
                    contribution.created_ts,
                    contribution.updated_ts,
                ),
            )
            conn.commit()
        finally:
            conn.close()
        return contribution.contribution_id

    async def insert_contribution(self, contribution: Contribution) -> str:
        return await self._run(self._insert_contribution, contribution)

    def _update_contributions_status(
        self,
        ids: list[str],
        status: str,
        notes: str | None,
        updated_ts: str,
    ) -> int:
        if not ids:
            return 0
        placeholders = ",".join("?" * len(ids))
        conn = self._connect()
        try:
            if notes is not None:
                cursor = conn.execute(
                    f"""UPDATE {self.table}
                    SET status = ?, notes = ?, updated_ts = ? WHERE contribution_id IN ({placeholders})""",
                    [status, notes, updated_ts, *ids],
                )
            else:
                cursor = conn.execute(
                    f"""UPDATE {self.table}
                    SET status = ?, updated_ts = ? WHERE contribution_id IN ({placeholders})""",
                    [status, updated_ts, *ids],
                )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    async def update_contributions_status(
        self,
        ids: Iterable[str],
        status: ContributionStatus,
        *,
        notes: str | None = None,
        updated_ts: str | None = None,
    ) -> int:
        """Set ``status`` on every contribution in ``ids``. Returns rows updated."""
        return await self._run(
            self._update_contributions_status,
            list(ids),
            ContributionStatus(status).value,
            notes,
            updated_ts or to_ts(utc_now()),
        )

    def _list_offers(
        self,
        since: datetime | None,
        until: datetime | None,
        statuses: list[str] | None,
        user_id: str | None,
        exclude_user_id: str | None,
    ) -> list[Offer]:
        clauses = ["1 = 1"]
        params: list[Any] = []
        if since is not None:
            clauses.append("c.created_ts >= ?")
            params.append(to_ts(since))
        if until is not None:
            clauses.append("c.created_ts < ?")
            params.append(to_ts(until))
        if statuses:
            clauses.append("c.status IN ({})".format(",".join("?" * len(statuses))))
            params.extend(statuses)
        if user_id is not None:
            clauses.append("c.user_id = ?")
            params.append(user_id)
        if exclude_user_id is not None:
            clauses.append("c.user_id != ?")
            params.append(exclude_user_id)

        conn = self._connect()
        try:
            cursor = conn.execute(
                f"""
                SELECT {OFFER_COLUMNS}
                FROM {self.table} c
                JOIN products p ON p.id = c.product_id
                JOIN stores s ON s.id = c.store_id
                WHERE {' AND '.join(clauses)}
                ORDER BY c.created_ts DESC
                """,
                params,
            )
            return [Offer(**dict(row)) for row in cursor.fetchall()]
        finally:
            conn.close()

    async def list_offers(
        self,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
        statuses: Iterable[ContributionStatus | str] | None = None,
        city: str | None = None,
        state: str | None = None,
        user_id: str | None = None,
        exclude_user_id: str | None = None,
    ) -> list[Offer]:
        """
        Contributions joined with product/store names, newest first.

        ``city`` and ``state`` compare by normalized equality, so
        "São Paulo" matches "sao paulo".
        """
        offers = await self._run(
            self._list_offers,
            since,
            until,
            _status_values(statuses) if statuses is not None else None,
            user_id,
            exclude_user_id,
        )
        if city:
            offers = [o for o in offers if normalize(o.city) == normalize(city)]
        if state:
            offers = [o for o in offers if o.state.upper() == state.strip().upper()]
        return offers

    def _delete_contributions_before(self, cutoff: datetime) -> int:
        conn = self._connect()
        try:
            cursor = conn.execute(
                f"DELETE FROM {self.table} WHERE created_ts < ?",
                (to_ts(cutoff),),
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    async def delete_contributions_before(self, cutoff: datetime) -> int:
        """Hard-delete contributions created before ``cutoff``. Returns rows deleted."""
        return await self._run(self._delete_contributions_before, cutoff)
