from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, Optional, Union

from errors import EntitlementVerificationError, StoreError
from models import SubscriptionTier
from store import (
    PRODUCT_CATALOG,
    Product,
    ProductID,
    PurchaseOutcome,
    SignedTransaction,
    StoreClient,
    StoreTransaction,
    verify_transaction,
)

logger = logging.getLogger(__name__)

TIER_BY_PRODUCT = {
    ProductID.monthly.value: SubscriptionTier.monthly,
    ProductID.yearly.value: SubscriptionTier.yearly,
    ProductID.lifetime.value: SubscriptionTier.lifetime,
}

_TIER_PRIORITY = (
    SubscriptionTier.lifetime,
    SubscriptionTier.yearly,
    SubscriptionTier.monthly,
)

# Handlers may be coroutines; blocking work belongs in asyncio.to_thread.
StatusChangeHandler = Callable[[Optional[bool], bool], Union[None, Awaitable[None]]]


def select_best_tier(product_ids: Iterable[str]) -> SubscriptionTier:
    """Lifetime beats yearly beats monthly; nothing owned means free."""
    owned = {TIER_BY_PRODUCT[pid] for pid in product_ids if pid in TIER_BY_PRODUCT}
    for tier in _TIER_PRIORITY:
        if tier in owned:
            return tier
    return SubscriptionTier.free


def product_for_tier(tier: SubscriptionTier) -> Optional[str]:
    for product_id, product_tier in TIER_BY_PRODUCT.items():
        if product_tier == tier:
            return product_id
    return None


@dataclass(frozen=True)
class SubscriptionStatus:
    tier: SubscriptionTier = SubscriptionTier.free

    @property
    def is_subscribed(self) -> bool:
        return self.tier != SubscriptionTier.free

    @property
    def product_id(self) -> Optional[str]:
        return product_for_tier(self.tier)


@dataclass(frozen=True)
class SubscriptionInfo:
    current_product: Optional[str] = None
    will_renew: bool = False
    renewal_date: Optional[datetime] = None
    pending_product: Optional[str] = None

    @property
    def is_pending_change(self) -> bool:
        return (
            self.pending_product is not None
            and self.pending_product != self.current_product
        )


class SubscriptionManager:
    """Tracks entitlements from the store and reports tier changes.

    Every state mutation happens under one lock after the awaited store call
    returns, so status transitions are applied one at a time.
    """

    def __init__(
        self,
        store: StoreClient,
        on_change: Optional[StatusChangeHandler] = None,
        secret: Optional[str] = None,
    ) -> None:
        self.store = store
        self.on_change = on_change
        self.secret = secret
        self.products: list[Product] = []
        self.purchased_product_ids: set[str] = set()
        self.status = SubscriptionStatus()
        self.info = SubscriptionInfo()
        self.last_error: Optional[str] = None
        self._lock = asyncio.Lock()
        self._known: Optional[bool] = None
        self._listener: Optional[asyncio.Task] = None

    @property
    def is_subscribed(self) -> bool:
        return self.status.is_subscribed

    def _verify(self, signed: SignedTransaction) -> Optional[StoreTransaction]:
        try:
            return verify_transaction(signed, self.secret)
        except EntitlementVerificationError as exc:
            logger.warning(f"entitlement_unverified: error={exc}")
            return None

    def _record_error(self, action: str, exc: Exception) -> None:
        self.last_error = str(exc)
        logger.error(f"store_failed: action={action} error={exc}")

    async def load_products(self) -> list[Product]:
        order = [product.id for product in PRODUCT_CATALOG]
        try:
            fetched = await self.store.fetch_products(order)
        except StoreError as exc:
            self._record_error("load_products", exc)
            raise
        async with self._lock:
            self.products = sorted(fetched, key=lambda p: order.index(p.id))
            self.last_error = None
        logger.info(f"products_loaded: count={len(self.products)}")
        return self.products

    async def purchase(self, product_id: str) -> bool:
        try:
            result = await self.store.purchase(product_id)
        except StoreError as exc:
            self._record_error("purchase", exc)
            raise
        if result.outcome != PurchaseOutcome.success or result.transaction is None:
            logger.info(f"purchase_not_completed: product={product_id} outcome={result.outcome.value}")
            return False
        try:
            txn = verify_transaction(result.transaction, self.secret)
        except EntitlementVerificationError as exc:
            self._record_error("purchase", exc)
            raise
        await self.store.finish(txn)
        logger.info(f"purchase_completed: product={txn.product_id} transaction={txn.transaction_id}")
        await self.refresh_status()
        return True

    async def restore(self) -> None:
        try:
            await self.store.sync()
        except StoreError as exc:
            self._record_error("restore", exc)
            raise
        await self.refresh_status()

    async def refresh_status(self, now: Optional[datetime] = None) -> SubscriptionStatus:
        try:
            entitlements = await self.store.current_entitlements()
        except StoreError as exc:
            self._record_error("refresh_status", exc)
            raise
        now = now or datetime.now(timezone.utc)
        verified = [
            txn
            for txn in (self._verify(signed) for signed in entitlements)
            if txn is not None and txn.is_active(now)
        ]
        async with self._lock:
            self.purchased_product_ids = {txn.product_id for txn in verified}
            self.status = SubscriptionStatus(select_best_tier(self.purchased_product_ids))
            current = next(
                (txn for txn in verified if txn.product_id == self.status.product_id),
                None,
            )
            if current is None:
                self.info = SubscriptionInfo()
            else:
                self.info = SubscriptionInfo(
                    current_product=current.product_id,
                    will_renew=current.will_auto_renew,
                    renewal_date=current.expires_at,
                    pending_product=current.auto_renew_product_id,
                )
            self.last_error = None
            previous, self._known = self._known, self.status.is_subscribed
            if previous != self._known:
                logger.info(
                    f"subscription_changed: previous={previous} "
                    f"current={self._known} tier={self.status.tier.value}"
                )
                if self.on_change is not None:
                    outcome = self.on_change(previous, self._known)
                    if inspect.isawaitable(outcome):
                        await outcome
        return self.status

    async def _listen(self) -> None:
        async for signed in self.store.updates():
            txn = self._verify(signed)
            if txn is None:
                continue
            try:
                await self.refresh_status()
            except StoreError:
                continue
            await self.store.finish(txn)

    def start_listener(self) -> asyncio.Task:
        if self._listener is None or self._listener.done():
            self._listener = asyncio.get_running_loop().create_task(self._listen())
            logger.info("entitlement_listener_started")
        return self._listener

    async def stop(self) -> None:
        if self._listener is None:
            return
        self._listener.cancel()
        try:
            await self._listener
        except asyncio.CancelledError:
            pass
        self._listener = None
        logger.info("entitlement_listener_stopped")
