import asyncio
import logging
import tomllib
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from sqlalchemy.orm import Session

from config import get_settings, local_now
from currency import Currency, format_amount
from database import SessionLocal, session_scope
from errors import (
    FeatureLimitError,
    NotFoundError,
    PersistenceError,
    StoreError,
)
from models import Envelope, TransactionRecord
from premium import SubscriptionTransitions, limit_message
from recurrence import RecurringMaterializer
from scheduler import SchedulerManager
from schemas import (
    CalendarMonthOut,
    CloudSyncIn,
    CurrencyIn,
    DayTotalsOut,
    EnvelopeIn,
    EnvelopeUpdate,
    LanguageIn,
    PurchaseIn,
    RenewalDayIn,
    ReorderIn,
    SubscriptionStatusOut,
    TransactionIn,
)
from services import (
    CalendarService,
    CloudSyncService,
    EnvelopeService,
    PreferencesService,
    TransactionService,
    reset_all_data,
)
from store import SandboxStore
from subscriptions import SubscriptionManager

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Envelope Budget")


def _load_app_version() -> str:
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def apply_subscription_change(was_subscribed: Optional[bool], is_subscribed: bool) -> None:
    try:
        with session_scope() as session:
            SubscriptionTransitions(session).apply(was_subscribed, is_subscribed)
            CloudSyncService(PreferencesService(session)).disable_if_unsubscribed(
                is_subscribed
            )
    except PersistenceError as exc:
        logger.error(f"subscription_transition_failed: error={exc}")


async def handle_subscription_change(
    was_subscribed: Optional[bool], is_subscribed: bool
) -> None:
    await asyncio.to_thread(apply_subscription_change, was_subscribed, is_subscribed)


store = SandboxStore()
subscription_manager = SubscriptionManager(store, on_change=handle_subscription_change)
scheduler_manager = SchedulerManager(lambda: subscription_manager.is_subscribed)


@app.on_event("startup")
async def startup_event():
    logger.info(f"app_start: version={APP_VERSION}")
    try:
        await subscription_manager.load_products()
        await subscription_manager.refresh_status()
    except StoreError as exc:
        logger.warning(f"subscription_startup_failed: error={exc}")
    subscription_manager.start_listener()
    scheduler_manager.start()


@app.on_event("shutdown")
async def shutdown_event():
    scheduler_manager.stop()
    await subscription_manager.stop()


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, FeatureLimitError):
        return HTTPException(status_code=402, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, StoreError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail="Could not save changes")


def envelope_payload(envelope: Envelope, currency: Currency) -> dict[str, object]:
    return {
        "id": envelope.id,
        "name": envelope.name,
        "type": envelope.type.value,
        "budget": envelope.budget,
        "income": envelope.income,
        "spent": envelope.spent,
        "goal": envelope.goal,
        "remaining": envelope.remaining,
        "remaining_display": format_amount(envelope.remaining, currency),
        "progress": envelope.progress,
        "sort_order": envelope.sort_order,
        "origin_id": envelope.origin_id,
        "parent_id": envelope.parent_id,
        "created_at": envelope.created_at.isoformat(),
        "expiration_date": (
            envelope.expiration_date.isoformat() if envelope.expiration_date else None
        ),
        "is_expired": envelope.is_expired(),
    }


def transaction_payload(txn: TransactionRecord) -> dict[str, object]:
    return {
        "id": txn.id,
        "envelope_id": txn.envelope_id,
        "amount": txn.amount,
        "date": txn.date.isoformat(),
        "type": txn.type.value,
        "note": txn.note,
        "is_recurring": txn.is_recurring,
        "parent_id": txn.parent_id,
    }


def subscription_payload() -> SubscriptionStatusOut:
    info = subscription_manager.info
    return SubscriptionStatusOut(
        tier=subscription_manager.status.tier.value,
        is_subscribed=subscription_manager.is_subscribed,
        product_id=info.current_product,
        will_renew=info.will_renew if info.current_product else None,
        renewal_date=info.renewal_date,
        pending_product_id=info.pending_product if info.is_pending_change else None,
        last_error=subscription_manager.last_error,
    )


@app.get("/api/envelopes")
def api_envelopes(
    year: Optional[int] = None,
    month: Optional[int] = None,
    db: Session = Depends(get_db),
):
    now = local_now()
    year = year or now.year
    month = month or now.month
    service = EnvelopeService(db, is_subscribed=subscription_manager.is_subscribed)
    currency = PreferencesService(db).currency()
    return [
        envelope_payload(envelope, currency)
        for envelope in service.list_for_month(year, month, now)
    ]


@app.post("/api/envelopes", status_code=201)
def api_create_envelope(payload: EnvelopeIn, db: Session = Depends(get_db)):
    service = EnvelopeService(db, is_subscribed=subscription_manager.is_subscribed)
    try:
        envelope = service.create(payload)
    except (ValueError, PersistenceError) as exc:
        raise _http_error(exc) from exc
    return envelope_payload(envelope, PreferencesService(db).currency())


@app.post("/api/envelopes/reorder")
def api_reorder_envelopes(payload: ReorderIn, db: Session = Depends(get_db)):
    service = EnvelopeService(db, is_subscribed=subscription_manager.is_subscribed)
    try:
        envelopes = service.reorder(payload.envelope_ids)
    except (ValueError, PersistenceError) as exc:
        raise _http_error(exc) from exc
    return [{"id": e.id, "sort_order": e.sort_order} for e in envelopes]


@app.get("/api/envelopes/{envelope_id}")
def api_envelope(envelope_id: int, db: Session = Depends(get_db)):
    try:
        envelope = EnvelopeService(db).get(envelope_id)
    except NotFoundError as exc:
        raise _http_error(exc) from exc
    return envelope_payload(envelope, PreferencesService(db).currency())


@app.patch("/api/envelopes/{envelope_id}")
def api_update_envelope(
    envelope_id: int, payload: EnvelopeUpdate, db: Session = Depends(get_db)
):
    service = EnvelopeService(db, is_subscribed=subscription_manager.is_subscribed)
    try:
        envelope = service.update(envelope_id, payload)
    except (ValueError, PersistenceError) as exc:
        raise _http_error(exc) from exc
    return envelope_payload(envelope, PreferencesService(db).currency())


@app.delete("/api/envelopes/{envelope_id}", status_code=204)
def api_delete_envelope(envelope_id: int, db: Session = Depends(get_db)):
    try:
        EnvelopeService(db).delete(envelope_id)
    except (ValueError, PersistenceError) as exc:
        raise _http_error(exc) from exc


@app.get("/api/envelopes/{envelope_id}/transactions")
def api_envelope_transactions(envelope_id: int, db: Session = Depends(get_db)):
    try:
        EnvelopeService(db).get(envelope_id)
    except NotFoundError as exc:
        raise _http_error(exc) from exc
    items = TransactionService(db).list_for_envelope(envelope_id)
    return [transaction_payload(txn) for txn in items]


@app.post("/api/transactions", status_code=201)
def api_create_transaction(payload: TransactionIn, db: Session = Depends(get_db)):
    service = TransactionService(db, is_subscribed=subscription_manager.is_subscribed)
    try:
        txn = service.create(payload)
    except (ValueError, PersistenceError) as exc:
        raise _http_error(exc) from exc
    return transaction_payload(txn)


@app.patch("/api/transactions/{transaction_id}")
def api_update_transaction(
    transaction_id: int, payload: TransactionIn, db: Session = Depends(get_db)
):
    service = TransactionService(db, is_subscribed=subscription_manager.is_subscribed)
    try:
        txn = service.update(transaction_id, payload)
    except (ValueError, PersistenceError) as exc:
        raise _http_error(exc) from exc
    return transaction_payload(txn)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def api_delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    try:
        TransactionService(db).delete(transaction_id)
    except (ValueError, PersistenceError) as exc:
        raise _http_error(exc) from exc


@app.get("/api/calendar", response_model=CalendarMonthOut)
def api_calendar(
    year: Optional[int] = None,
    month: Optional[int] = None,
    db: Session = Depends(get_db),
):
    now = local_now()
    try:
        summary = CalendarService(db).month_summary(year or now.year, month or now.month)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return CalendarMonthOut(
        year=summary.year,
        month=summary.month,
        income=summary.income,
        expense=summary.expense,
        balance=summary.balance,
        days=[
            DayTotalsOut(day=d.day, income=d.income, expense=d.expense)
            for d in summary.days
        ],
    )


@app.get("/api/summary")
def api_summary(
    year: Optional[int] = None,
    month: Optional[int] = None,
    db: Session = Depends(get_db),
):
    now = local_now()
    year = year or now.year
    month = month or now.month
    service = EnvelopeService(db, is_subscribed=subscription_manager.is_subscribed)
    total = service.total_remaining(year, month, now)
    currency = PreferencesService(db).currency()
    return {
        "year": year,
        "month": month,
        "total_remaining": total,
        "total_remaining_display": format_amount(total, currency),
        "currency": currency.code,
    }


@app.get("/api/settings/renewal-day")
def api_renewal_day(db: Session = Depends(get_db)):
    return {"renewal_day": PreferencesService(db).renewal_day()}


@app.put("/api/settings/renewal-day")
def api_set_renewal_day(payload: RenewalDayIn, db: Session = Depends(get_db)):
    try:
        if not subscription_manager.is_subscribed:
            raise FeatureLimitError(limit_message("Custom renewal day"))
        day = PreferencesService(db).set_renewal_day(payload.renewal_day)
    except (ValueError, PersistenceError) as exc:
        raise _http_error(exc) from exc
    return {"renewal_day": day}


@app.get("/api/currencies")
def api_currencies(db: Session = Depends(get_db)):
    prefs = PreferencesService(db)
    active = prefs.currency()
    return [
        {
            "code": c.code,
            "symbol": c.symbol,
            "name": c.name,
            "requires_decimal": c.requires_decimal,
            "active": c.code == active.code,
        }
        for c in prefs.currencies()
    ]


@app.put("/api/settings/currency")
def api_set_currency(payload: CurrencyIn, db: Session = Depends(get_db)):
    try:
        currency = PreferencesService(db).set_currency(payload.code)
    except (ValueError, PersistenceError) as exc:
        raise _http_error(exc) from exc
    return {"code": currency.code, "symbol": currency.symbol}


@app.put("/api/settings/language")
def api_set_language(payload: LanguageIn, db: Session = Depends(get_db)):
    prefs = PreferencesService(db)
    try:
        language = prefs.set_language(payload.language)
    except (ValueError, PersistenceError) as exc:
        raise _http_error(exc) from exc
    return {"language": language, "currency": prefs.currency().code}


@app.get("/api/settings/cloud-sync")
def api_cloud_sync(db: Session = Depends(get_db)):
    sync = CloudSyncService(PreferencesService(db))
    account = sync.probe.status()
    return {
        "enabled": sync.is_enabled(),
        "active": sync.is_sync_active(subscription_manager.is_subscribed),
        "account_available": account.available,
        "message": account.message,
    }


@app.put("/api/settings/cloud-sync")
def api_set_cloud_sync(payload: CloudSyncIn, db: Session = Depends(get_db)):
    sync = CloudSyncService(PreferencesService(db))
    try:
        enabled = sync.set_enabled(
            payload.enabled, is_subscribed=subscription_manager.is_subscribed
        )
    except (ValueError, PersistenceError) as exc:
        raise _http_error(exc) from exc
    return {
        "enabled": enabled,
        "active": sync.is_sync_active(subscription_manager.is_subscribed),
    }


@app.get("/api/subscription", response_model=SubscriptionStatusOut)
def api_subscription():
    return subscription_payload()


@app.get("/api/subscription/products")
async def api_subscription_products():
    products = subscription_manager.products
    if not products:
        try:
            products = await subscription_manager.load_products()
        except StoreError as exc:
            raise _http_error(exc) from exc
    return [
        {
            "id": p.id,
            "display_name": p.display_name,
            "description": p.description,
            "price": p.price,
            "is_subscription": p.is_subscription,
            "purchased": p.id in subscription_manager.purchased_product_ids,
        }
        for p in products
    ]


@app.post("/api/subscription/purchase")
async def api_subscription_purchase(payload: PurchaseIn):
    try:
        completed = await subscription_manager.purchase(payload.product_id)
    except StoreError as exc:
        raise _http_error(exc) from exc
    return {"completed": completed, "status": subscription_payload()}


@app.post("/api/subscription/restore", response_model=SubscriptionStatusOut)
async def api_subscription_restore():
    try:
        await subscription_manager.restore()
    except StoreError as exc:
        raise _http_error(exc) from exc
    return subscription_payload()


@app.post("/api/admin/materialize")
def api_materialize(db: Session = Depends(get_db)):
    try:
        result = RecurringMaterializer(db).run()
    except PersistenceError as exc:
        raise _http_error(exc) from exc
    return {
        "envelopes_created": result.envelopes_created,
        "transactions_created": result.transactions_created,
    }


@app.post("/api/admin/reset", status_code=204)
def api_reset(db: Session = Depends(get_db)):
    try:
        reset_all_data(db)
    except PersistenceError as exc:
        raise _http_error(exc) from exc
