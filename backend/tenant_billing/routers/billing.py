"""主催者向け購読ルーター: Subscribe, Confirm, Cancel, Billing Portal, 掲載クレジット"""
import urllib.parse

import stripe
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from tenant_billing.core.config import settings
from tenant_billing.core.database import get_db
from tenant_billing.core.logging import get_logger
from tenant_billing.core.rate_limit import (
    limiter,
    SUBSCRIBE_RATE_LIMIT,
    CONFIRM_RATE_LIMIT,
    CREDITS_SPEND_RATE_LIMIT,
)
from tenant_billing.models.organizer import Organizer
from tenant_billing.routers.deps import require_organizer
from tenant_billing.schemas.subscription import (
    BillingPortalRequest,
    ConfirmSubscriptionRequest,
    ConfirmSubscriptionResponse,
    CreditBalance,
    CreditCheckRequest,
    CreditSpendRequest,
    CreditSpendResponse,
    CreditUsageInfo,
    SubscribeResponse,
    SubscriptionInfo,
    SubscriptionStateInfo,
    SubscriptionStatusResponse,
)
from tenant_billing.services import credits_service, stripe_service, subscription_service
from tenant_billing.services.stripe_service import get_field
from tenant_billing.services.subscription_state import StateInfo, resolve

router = APIRouter(prefix="/api/billing/organizer", tags=["billing"])
logger = get_logger(__name__)

PROCESSOR_UNAVAILABLE = "決済システムと通信できませんでした。しばらくしてから再度お試しください。"


def _validate_redirect_url(url: str) -> str:
    """リダイレクトURLの安全性を検証 (同一オリジンのみ許可)"""
    if not url:
        return url
    parsed = urllib.parse.urlparse(url)
    site_parsed = urllib.parse.urlparse(settings.SITE_URL)
    if parsed.netloc and parsed.netloc != site_parsed.netloc:
        raise HTTPException(status_code=400, detail="不正なリダイレクトURLです")
    return url


def _state_info(info: StateInfo) -> SubscriptionStateInfo:
    return SubscriptionStateInfo(
        state=info.state.value,
        has_full_access=info.has_full_access,
        is_public_allowed=info.is_public_allowed,
        access_expires_at=info.access_expires_at,
        trial_ends_at=info.trial_ends_at,
        trial_days_remaining=info.trial_days_remaining,
        platform_trial_days_remaining=info.platform_trial_days_remaining,
        message=info.message,
    )


def _credit_balance(result: credits_service.CreditCheckResult) -> CreditBalance:
    return CreditBalance(
        has_credits=result.has_credits,
        available=result.available,
        used=result.used,
        reset_date=result.reset_date,
        state=result.state.value,
        message=result.message,
    )


# =========================================================
# 購読
# =========================================================

@router.get("/subscription", response_model=SubscriptionStatusResponse)
async def get_subscription(
    organizer: Organizer = Depends(require_organizer),
    db: Session = Depends(get_db),
):
    """購読状態の取得 (コミュニティ公開状態のずれもここで補正)"""
    record = subscription_service.get_or_create_subscription_record(db, organizer)
    subscription_service.reconcile_visibility(db, record)

    info = resolve(record)
    records = subscription_service.list_subscription_records(db, organizer.id)
    return SubscriptionStatusResponse(
        subscription=SubscriptionInfo.model_validate(record),
        state_info=_state_info(info),
        trial_eligible=subscription_service.is_trial_eligible(organizer, records),
    )


@router.post("/subscribe", response_model=SubscribeResponse)
@limiter.limit(SUBSCRIBE_RATE_LIMIT)
async def subscribe(
    request: Request,
    organizer: Organizer = Depends(require_organizer),
    db: Session = Depends(get_db),
):
    """購読開始 (Stripe Subscription + SetupIntent 作成)"""
    record = subscription_service.get_subscription_record(db, organizer.id)
    if subscription_service.has_blocking_subscription(record):
        raise HTTPException(status_code=400, detail="既に有効な購読またはトライアルがあります")

    try:
        result = subscription_service.initiate_subscription(db, organizer)
    except subscription_service.SubscriptionConflictError as e:
        logger.warning(f"購読開始の競合: organizer_id={organizer.id}, error={e}")
        raise HTTPException(status_code=409, detail="購読手続きが既に進行中です。ページを再読み込みしてください。")
    except stripe.StripeError as e:
        db.rollback()
        logger.error(f"購読開始失敗: organizer_id={organizer.id}, error={e}")
        raise HTTPException(status_code=503, detail=f"購読を開始できませんでした。{PROCESSOR_UNAVAILABLE}")

    return SubscribeResponse(
        client_secret=result.client_secret,
        subscription_id=result.stripe_subscription_id,
        status=result.status,
        trial_days=result.trial_days,
        requires_payment_method=result.client_secret is not None,
        publishable_key=settings.STRIPE_PUBLISHABLE_KEY or None,
    )


@router.post("/confirm", response_model=ConfirmSubscriptionResponse)
@limiter.limit(CONFIRM_RATE_LIMIT)
async def confirm(
    request: Request,
    req: ConfirmSubscriptionRequest,
    organizer: Organizer = Depends(require_organizer),
    db: Session = Depends(get_db),
):
    """購読確定 (支払い方法登録後に呼ばれる)"""
    record = subscription_service.get_subscription_record(db, organizer.id)
    if not record or not record.stripe_subscription_id:
        raise HTTPException(status_code=400, detail="購読手続きが開始されていません")

    payment_method_id = None
    if req.setup_intent_id:
        try:
            setup_intent = stripe_service.retrieve_setup_intent(req.setup_intent_id)
        except stripe.StripeError as e:
            logger.error(f"SetupIntent取得失敗: organizer_id={organizer.id}, error={e}")
            raise HTTPException(status_code=503, detail=PROCESSOR_UNAVAILABLE)

        customer = get_field(setup_intent, "customer")
        if customer and not isinstance(customer, str):
            customer = get_field(customer, "id")
        if customer != record.stripe_customer_id:
            raise HTTPException(status_code=403, detail="支払い情報が一致しません")
        if get_field(setup_intent, "status") != "succeeded":
            raise HTTPException(status_code=400, detail="お支払い方法の登録が完了していません")

        payment_method_id = get_field(setup_intent, "payment_method")
        if payment_method_id and not isinstance(payment_method_id, str):
            payment_method_id = get_field(payment_method_id, "id")

    try:
        result = subscription_service.confirm_subscription(db, organizer, record, payment_method_id)
    except subscription_service.PaymentMethodRequiredError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))
    except stripe.CardError as e:
        db.rollback()
        logger.warning(f"購読確定: 支払い拒否 organizer_id={organizer.id}, error={e}")
        raise HTTPException(status_code=402, detail="お支払いが承認されませんでした。別のお支払い方法をお試しください。")
    except stripe.StripeError as e:
        db.rollback()
        logger.error(f"購読確定失敗: organizer_id={organizer.id}, error={e}")
        raise HTTPException(status_code=503, detail=f"購読を確定できませんでした。{PROCESSOR_UNAVAILABLE}")

    return ConfirmSubscriptionResponse(
        status=result.status,
        state_info=_state_info(result.state_info),
        invoice_paid=result.invoice_paid,
        activated_communities=result.activated_communities,
    )


@router.post("/cancel")
async def cancel(
    organizer: Organizer = Depends(require_organizer),
    db: Session = Depends(get_db),
):
    """購読解約 (期間終了まで継続)"""
    record = subscription_service.get_subscription_record(db, organizer.id)
    if not record or not record.stripe_subscription_id:
        raise HTTPException(status_code=400, detail="解約できる購読がありません")

    try:
        subscription_service.cancel_subscription(db, record)
    except stripe.StripeError as e:
        db.rollback()
        logger.error(f"購読解約失敗: organizer_id={organizer.id}, error={e}")
        raise HTTPException(status_code=503, detail=f"解約できませんでした。{PROCESSOR_UNAVAILABLE}")

    info = resolve(record)
    return {
        "message": "解約予約しました。期間終了まで引き続きご利用いただけます。",
        "cancel_at": record.cancel_at,
        "state_info": _state_info(info),
    }


@router.post("/billing-portal")
async def billing_portal(
    req: BillingPortalRequest,
    organizer: Organizer = Depends(require_organizer),
    db: Session = Depends(get_db),
):
    """Stripe Billing Portal"""
    record = subscription_service.get_subscription_record(db, organizer.id)
    if not record or not record.stripe_customer_id:
        raise HTTPException(status_code=400, detail="決済情報が見つかりません")

    return_url = _validate_redirect_url(req.return_url) or f"{settings.SITE_URL}/pricing"
    try:
        url = stripe_service.create_billing_portal_session(record.stripe_customer_id, return_url)
    except stripe.StripeError as e:
        logger.error(f"Stripe Billing Portal作成失敗: organizer_id={organizer.id}, error={e}")
        raise HTTPException(status_code=503, detail=f"決済ポータルを開けませんでした。{PROCESSOR_UNAVAILABLE}")
    return {"portal_url": url}


# =========================================================
# 掲載クレジット
# =========================================================

@router.get("/credits/balance", response_model=CreditBalance)
async def credits_balance(
    organizer: Organizer = Depends(require_organizer),
    db: Session = Depends(get_db),
):
    """クレジット残高"""
    return _credit_balance(credits_service.check_credits(db, organizer.id))


@router.post("/credits/check", response_model=CreditBalance)
async def credits_check(
    req: CreditCheckRequest,
    organizer: Organizer = Depends(require_organizer),
    db: Session = Depends(get_db),
):
    """必要クレジットが足りるか確認"""
    needed = req.credits_needed or credits_service.calculate_credits_needed(req.placements, req.duration_days)
    return _credit_balance(credits_service.check_credits(db, organizer.id, needed))


@router.post("/credits/spend", response_model=CreditSpendResponse)
@limiter.limit(CREDITS_SPEND_RATE_LIMIT)
async def credits_spend(
    request: Request,
    req: CreditSpendRequest,
    organizer: Organizer = Depends(require_organizer),
    db: Session = Depends(get_db),
):
    """掲載作成時のクレジット消費"""
    amount = credits_service.calculate_credits_needed(
        len(req.placements),
        credits_service.placement_duration_days(req.start_date, req.end_date),
    )
    result = credits_service.deduct_credits(
        db,
        organizer.id,
        amount,
        campaign_id=req.campaign_id,
        placements=req.placements,
        start_date=req.start_date,
        end_date=req.end_date,
    )
    if not result.success:
        raise HTTPException(status_code=402, detail=result.error)

    return CreditSpendResponse(
        success=True,
        credits_deducted=result.deducted,
        remaining=result.remaining,
        usage_id=result.usage_id,
    )


@router.get("/credits/usage", response_model=list[CreditUsageInfo])
async def credits_usage(
    limit: int = Query(50, ge=1, le=200),
    organizer: Organizer = Depends(require_organizer),
    db: Session = Depends(get_db),
):
    """クレジット使用履歴"""
    return credits_service.get_credit_usage_history(db, organizer.id, limit)
