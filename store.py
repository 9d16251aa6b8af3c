from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import AsyncIterator, Optional, Protocol, Sequence

from itsdangerous import BadSignature, URLSafeSerializer

from config import get_settings
from errors import EntitlementVerificationError, StoreError

logger = logging.getLogger(__name__)


class ProductID(str, Enum):
    monthly = "envelopes.premium.monthly"
    yearly = "envelopes.premium.yearly"
    lifetime = "envelopes.premium.lifetime"


@dataclass(frozen=True)
class Product:
    id: str
    display_name: str
    description: str
    price: Decimal
    renewal_period: Optional[timedelta]

    @property
    def is_subscription(self) -> bool:
        return self.renewal_period is not None


PRODUCT_CATALOG: tuple[Product, ...] = (
    Product(
        ProductID.monthly.value,
        "Monthly",
        "Renews every month",
        Decimal("2.99"),
        timedelta(days=30),
    ),
    Product(
        ProductID.yearly.value,
        "Yearly",
        "Renews every year",
        Decimal("24.99"),
        timedelta(days=365),
    ),
    Product(
        ProductID.lifetime.value,
        "Lifetime",
        "One purchase, yours forever",
        Decimal("49.99"),
        None,
    ),
)


@dataclass(frozen=True)
class StoreTransaction:
    transaction_id: str
    product_id: str
    purchased_at: datetime
    expires_at: Optional[datetime] = None
    will_auto_renew: bool = False
    auto_renew_product_id: Optional[str] = None
    revoked_at: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        if self.revoked_at is not None:
            return False
        return self.expires_at is None or self.expires_at > now


@dataclass(frozen=True)
class SignedTransaction:
    """Opaque token as delivered by the store."""

    token: str


class PurchaseOutcome(str, Enum):
    success = "success"
    user_cancelled = "user_cancelled"
    pending = "pending"


@dataclass(frozen=True)
class PurchaseResult:
    outcome: PurchaseOutcome
    transaction: Optional[SignedTransaction] = None


def _serializer(secret: Optional[str] = None) -> URLSafeSerializer:
    return URLSafeSerializer(
        secret or get_settings().store_secret, salt="store-transaction"
    )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def sign_transaction(
    txn: StoreTransaction, secret: Optional[str] = None
) -> SignedTransaction:
    payload = {
        "id": txn.transaction_id,
        "p": txn.product_id,
        "at": _iso(txn.purchased_at),
        "exp": _iso(txn.expires_at),
        "renew": txn.will_auto_renew,
        "next": txn.auto_renew_product_id,
        "rev": _iso(txn.revoked_at),
    }
    return SignedTransaction(_serializer(secret).dumps(payload))


def verify_transaction(
    signed: SignedTransaction, secret: Optional[str] = None
) -> StoreTransaction:
    try:
        data = _serializer(secret).loads(signed.token)
    except BadSignature as exc:
        raise EntitlementVerificationError("Store transaction failed verification") from exc
    try:
        return StoreTransaction(
            transaction_id=str(data["id"]),
            product_id=str(data["p"]),
            purchased_at=datetime.fromisoformat(data["at"]),
            expires_at=_parse(data.get("exp")),
            will_auto_renew=bool(data.get("renew", False)),
            auto_renew_product_id=data.get("next"),
            revoked_at=_parse(data.get("rev")),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise EntitlementVerificationError("Store transaction payload is malformed") from exc


class StoreClient(Protocol):
    async def fetch_products(self, product_ids: Sequence[str]) -> list[Product]: ...

    async def purchase(self, product_id: str) -> PurchaseResult: ...

    async def sync(self) -> None: ...

    async def current_entitlements(self) -> list[SignedTransaction]: ...

    async def finish(self, txn: StoreTransaction) -> None: ...

    def updates(self) -> AsyncIterator[SignedTransaction]: ...


class SandboxStore:
    """Local store used when no real storefront is wired in.

    Holds entitlements in memory, signs them with the configured store secret
    and pushes every change onto the update stream.
    """

    def __init__(self, secret: Optional[str] = None) -> None:
        self.secret = secret
        self.available = True
        self.next_outcome = PurchaseOutcome.success
        self.finished: set[str] = set()
        self._entitlements: dict[str, tuple[Optional[StoreTransaction], SignedTransaction]] = {}
        self._queue: asyncio.Queue[SignedTransaction] = asyncio.Queue()

    def _ensure_available(self, action: str) -> None:
        if not self.available:
            logger.warning(f"store_unavailable: action={action}")
            raise StoreError(f"Store is unavailable ({action})")

    async def fetch_products(self, product_ids: Sequence[str]) -> list[Product]:
        self._ensure_available("fetch_products")
        wanted = set(product_ids)
        return [product for product in PRODUCT_CATALOG if product.id in wanted]

    def grant(
        self, product_id: str, now: Optional[datetime] = None
    ) -> SignedTransaction:
        now = now or datetime.now(timezone.utc)
        product = next((p for p in PRODUCT_CATALOG if p.id == product_id), None)
        if product is None:
            raise StoreError(f"Unknown product: {product_id}")
        txn = StoreTransaction(
            transaction_id=uuid.uuid4().hex,
            product_id=product_id,
            purchased_at=now,
            expires_at=now + product.renewal_period if product.renewal_period else None,
            will_auto_renew=product.is_subscription,
        )
        signed = sign_transaction(txn, self.secret)
        self._entitlements[product_id] = (txn, signed)
        self._queue.put_nowait(signed)
        return signed

    def deliver(self, key: str, signed: SignedTransaction) -> None:
        """Register a token produced elsewhere, e.g. by another signer."""
        self._entitlements[key] = (None, signed)
        self._queue.put_nowait(signed)

    def revoke(self, product_id: str, now: Optional[datetime] = None) -> None:
        entry = self._entitlements.pop(product_id, None)
        if entry is None or entry[0] is None:
            return
        txn = entry[0]
        revoked = StoreTransaction(
            transaction_id=txn.transaction_id,
            product_id=txn.product_id,
            purchased_at=txn.purchased_at,
            expires_at=txn.expires_at,
            revoked_at=now or datetime.now(timezone.utc),
        )
        self._queue.put_nowait(sign_transaction(revoked, self.secret))

    async def purchase(self, product_id: str) -> PurchaseResult:
        self._ensure_available("purchase")
        if self.next_outcome != PurchaseOutcome.success:
            return PurchaseResult(self.next_outcome)
        return PurchaseResult(PurchaseOutcome.success, self.grant(product_id))

    async def sync(self) -> None:
        self._ensure_available("sync")

    async def current_entitlements(self) -> list[SignedTransaction]:
        self._ensure_available("current_entitlements")
        now = datetime.now(timezone.utc)
        return [
            signed
            for txn, signed in self._entitlements.values()
            if txn is None or txn.is_active(now)
        ]

    async def finish(self, txn: StoreTransaction) -> None:
        self.finished.add(txn.transaction_id)

    async def updates(self) -> AsyncIterator[SignedTransaction]:
        while True:
            yield await self._queue.get()
