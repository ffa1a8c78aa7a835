"""Stripe Webhook ルーター"""
import json
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, Request, HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tenant_billing.core.config import settings
from tenant_billing.core.database import get_db
from tenant_billing.core.logging import get_logger
from tenant_billing.models.billing_event import BillingEvent
from tenant_billing.services import stripe_service, subscription_service
from tenant_billing.services.subscription_state import utcnow

logger = get_logger(__name__)

router = APIRouter(tags=["webhooks"])

EVENT_HANDLERS = {
    "customer.subscription.created": subscription_service.handle_subscription_changed,
    "customer.subscription.updated": subscription_service.handle_subscription_changed,
    "customer.subscription.deleted": subscription_service.handle_subscription_deleted,
    "invoice.payment_succeeded": subscription_service.handle_invoice_payment_succeeded,
    "invoice.paid": subscription_service.handle_invoice_payment_succeeded,
    "invoice.payment_failed": subscription_service.handle_invoice_payment_failed,
}


@router.post("/api/webhooks/stripe")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """Stripe Webhook エンドポイント (署名検証、イベント単位で冪等)"""
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        stripe_service.construct_webhook_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.error(f"Stripe webhook署名検証失敗: {e}")
        raise HTTPException(status_code=400, detail="Invalid signature")

    event = json.loads(payload)
    event_id = event["id"]
    event_type = event["type"]
    data = event["data"]["object"]

    event_log = _log_event(db, event_id, event_type, data)
    if event_log is None:
        logger.info(
            f"Stripe webhook重複スキップ: {event_id} ({event_type})",
            extra={"stripe_event_id": event_id, "event_type": event_type},
        )
        return {"received": True}

    handler = EVENT_HANDLERS.get(event_type)
    try:
        if handler is None:
            logger.info(f"未処理のStripeイベント: {event_type}")
        else:
            handler(db, data)
        _mark_processed(db, event_log)
    except Exception as e:
        db.rollback()
        logger.error(
            f"Stripe webhook処理エラー: {event_type} ({event_id}) - {e}",
            extra={"stripe_event_id": event_id, "event_type": event_type},
        )
        event_log.processing_error = str(e)[:2000]
        db.commit()
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    return {"received": True}


# =========================================================
# 冪等性ヘルパー
# =========================================================

def _log_event(db: Session, event_id: str, event_type: str, data: dict) -> Optional[BillingEvent]:
    """イベントを記録して返す。処理済みなら None"""
    event_log = db.query(BillingEvent).filter(BillingEvent.stripe_event_id == event_id).first()
    if event_log:
        return None if event_log.processed else event_log

    event_log = BillingEvent(
        stripe_event_id=event_id,
        event_type=event_type,
        payload=data,
        processed=False,
    )
    db.add(event_log)
    try:
        db.commit()
    except IntegrityError:
        # 同一イベントの並行配信
        db.rollback()
        event_log = db.query(BillingEvent).filter(BillingEvent.stripe_event_id == event_id).first()
        return None if event_log is None or event_log.processed else event_log
    return event_log


def _mark_processed(db: Session, event_log: BillingEvent):
    event_log.processed = True
    event_log.processed_at = utcnow()
    event_log.processing_error = None
    db.commit()
