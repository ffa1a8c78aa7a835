"""Stripe API操作サービス"""
import threading
from datetime import datetime, timezone
from typing import Optional

import stripe

from tenant_billing.core.config import settings
from tenant_billing.core.logging import get_logger

logger = get_logger(__name__)


def _init_stripe():
    stripe.api_key = settings.STRIPE_SECRET_KEY


# =========================================================
# 価格IDの解決 (起動後1回だけStripeに問い合わせる)
# =========================================================

_price_lock = threading.Lock()
_resolved_price_id: Optional[str] = None


def get_price_id() -> str:
    """月額プランの Price ID を取得

    設定値 STRIPE_PRICE_ID があればそれを使い、なければ lookup_key で検索する。
    結果はプロセス内で一度だけ解決し、以降は同じ値を返す。
    """
    global _resolved_price_id
    if _resolved_price_id:
        return _resolved_price_id

    with _price_lock:
        if _resolved_price_id:
            return _resolved_price_id

        if settings.STRIPE_PRICE_ID:
            _resolved_price_id = settings.STRIPE_PRICE_ID
            return _resolved_price_id

        _init_stripe()
        prices = stripe.Price.list(
            lookup_keys=[settings.STRIPE_PRICE_LOOKUP_KEY],
            active=True,
            limit=1,
        )
        if not prices.data:
            raise ValueError(f"Stripe Price が見つかりません: lookup_key={settings.STRIPE_PRICE_LOOKUP_KEY}")
        _resolved_price_id = prices.data[0].id
        logger.info(f"Stripe Price解決: lookup_key={settings.STRIPE_PRICE_LOOKUP_KEY}, price={_resolved_price_id}")
        return _resolved_price_id


def reset_price_cache():
    """Price ID キャッシュをクリア (設定変更時・テスト用)"""
    global _resolved_price_id
    with _price_lock:
        _resolved_price_id = None


# =========================================================
# Customer / Subscription / Intent
# =========================================================

def create_customer(email: str, name: str, metadata: dict = None) -> str:
    """Stripe Customer 作成"""
    _init_stripe()
    customer = stripe.Customer.create(
        email=email,
        name=name,
        metadata=metadata or {},
    )
    logger.info(f"Stripe Customer作成: {customer.id}")
    return customer.id


def create_subscription(
    customer_id: str,
    price_id: str,
    trial_days: Optional[int] = None,
    metadata: dict = None,
):
    """Subscription を支払い未確定 (default_incomplete) で作成

    支払い方法は別途 SetupIntent で登録し、確定処理で請求書を支払う。
    """
    _init_stripe()
    params = {
        "customer": customer_id,
        "items": [{"price": price_id}],
        "payment_behavior": "default_incomplete",
        "payment_settings": {"save_default_payment_method": "on_subscription"},
        "expand": ["latest_invoice"],
        "metadata": metadata or {},
    }
    if trial_days and trial_days > 0:
        params["trial_period_days"] = trial_days

    subscription = stripe.Subscription.create(**params)
    logger.info(
        f"Stripe Subscription作成: {subscription.id}, customer={customer_id}, "
        f"status={subscription.status}, trial_days={trial_days}"
    )
    return subscription


def retrieve_subscription(subscription_id: str):
    """Stripe Subscription を取得 (最新請求書を展開)"""
    _init_stripe()
    return stripe.Subscription.retrieve(subscription_id, expand=["latest_invoice"])


def cancel_subscription(subscription_id: str, at_period_end: bool = True):
    """購読をキャンセル (既定は期間終了時)"""
    _init_stripe()
    if at_period_end:
        return stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
    return stripe.Subscription.cancel(subscription_id)


def create_setup_intent(customer_id: str, metadata: dict = None):
    """支払い方法登録用の SetupIntent を作成"""
    _init_stripe()
    return stripe.SetupIntent.create(
        customer=customer_id,
        usage="off_session",
        payment_method_types=["card"],
        metadata=metadata or {},
    )


def retrieve_setup_intent(setup_intent_id: str):
    """SetupIntent を取得"""
    _init_stripe()
    return stripe.SetupIntent.retrieve(setup_intent_id)


def set_default_payment_method(customer_id: str, subscription_id: str, payment_method_id: str):
    """支払い方法を Customer と Subscription の既定に設定"""
    _init_stripe()
    stripe.Customer.modify(
        customer_id,
        invoice_settings={"default_payment_method": payment_method_id},
    )
    stripe.Subscription.modify(subscription_id, default_payment_method=payment_method_id)


def get_default_payment_method(customer_id: str) -> Optional[str]:
    """Customer の既定支払い方法IDを取得"""
    _init_stripe()
    customer = stripe.Customer.retrieve(customer_id)
    settings_obj = get_field(customer, "invoice_settings")
    pm = get_field(settings_obj, "default_payment_method")
    if pm and not isinstance(pm, str):
        pm = get_field(pm, "id")
    return pm


def pay_invoice(invoice_id: str, payment_method_id: Optional[str] = None):
    """請求書を支払う。既に支払い済みなら成功扱いで請求書を返す"""
    _init_stripe()
    invoice = stripe.Invoice.retrieve(invoice_id)
    if get_field(invoice, "status") == "paid":
        logger.info(f"請求書は支払い済み: {invoice_id}")
        return invoice

    params = {}
    if payment_method_id:
        params["payment_method"] = payment_method_id
    try:
        return stripe.Invoice.pay(invoice_id, **params)
    except stripe.InvalidRequestError as e:
        # 並行リクエストが先に支払った場合
        invoice = stripe.Invoice.retrieve(invoice_id)
        if get_field(invoice, "status") == "paid":
            logger.info(f"請求書は並行処理で支払い済み: {invoice_id}")
            return invoice
        logger.error(f"請求書支払い失敗: {invoice_id} - {e}")
        raise


def create_billing_portal_session(customer_id: str, return_url: str) -> str:
    """Billing Portal Session を作成し URL を返す"""
    _init_stripe()
    session = stripe.billing_portal.Session.create(
        customer=customer_id,
        return_url=return_url,
    )
    logger.info(f"Billing Portal Session作成: customer={customer_id}")
    return session.url


def construct_webhook_event(payload: bytes, sig_header: str, secret: str):
    """Webhook イベントを構築・検証"""
    return stripe.Webhook.construct_event(payload, sig_header, secret)


# =========================================================
# Stripeオブジェクトの読み取り
# =========================================================

def get_field(obj, key: str, default=None):
    """dict / StripeObject 共通のフィールド取得 (欠損・None は default)"""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        return default
    return default if value is None else value


def from_timestamp(value) -> Optional[datetime]:
    """Unix秒 → naive UTC datetime"""
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _first_item(subscription):
    items = get_field(get_field(subscription, "items"), "data", [])
    return items[0] if items else None


def subscription_snapshot(subscription) -> dict:
    """Subscription から永続化対象のフィールドを抜き出す (解釈はしない)

    API 2025-03 以降は期間情報が items 側にあるため、そちらも参照する。
    """
    item = _first_item(subscription)
    period_start = get_field(subscription, "current_period_start") or get_field(item, "current_period_start")
    period_end = get_field(subscription, "current_period_end") or get_field(item, "current_period_end")
    customer = get_field(subscription, "customer")
    if customer and not isinstance(customer, str):
        customer = get_field(customer, "id")

    return {
        "stripe_subscription_id": get_field(subscription, "id"),
        "stripe_customer_id": customer,
        "status": get_field(subscription, "status"),
        "trial_start": from_timestamp(get_field(subscription, "trial_start")),
        "trial_end": from_timestamp(get_field(subscription, "trial_end")),
        "current_period_start": from_timestamp(period_start),
        "current_period_end": from_timestamp(period_end),
        "cancel_at": from_timestamp(get_field(subscription, "cancel_at")),
        "canceled_at": from_timestamp(get_field(subscription, "canceled_at")),
        "ended_at": from_timestamp(get_field(subscription, "ended_at")),
        "metadata": dict(get_field(subscription, "metadata", {}) or {}),
    }


def latest_invoice(subscription):
    """展開済みの最新請求書 (未展開ならIDのみの文字列を返す)"""
    return get_field(subscription, "latest_invoice")


def invoice_subscription_id(invoice) -> Optional[str]:
    """Invoice から Subscription ID を取得 (新旧API両対応)"""
    sub_id = get_field(invoice, "subscription")
    if not sub_id:
        details = get_field(get_field(invoice, "parent"), "subscription_details")
        sub_id = get_field(details, "subscription")
    if sub_id and not isinstance(sub_id, str):
        sub_id = get_field(sub_id, "id")
    return sub_id
