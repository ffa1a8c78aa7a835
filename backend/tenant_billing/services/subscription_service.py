"""購読ビジネスロジック

購読の開始・確定・解約、Webhookで受け取ったStripeの状態の反映、
コミュニティ公開状態の補正を行う。状態の判定は必ず subscription_state を使う。
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import stripe
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tenant_billing.core.config import settings
from tenant_billing.core.logging import get_logger
from tenant_billing.models.community import Community
from tenant_billing.models.organizer import Organizer
from tenant_billing.models.subscription import OrganizerSubscription
from tenant_billing.models.subscription_payment import SubscriptionPayment
from tenant_billing.services import credits_service, stripe_service
from tenant_billing.services.stripe_service import get_field
from tenant_billing.services.subscription_state import (
    LifecycleState,
    ProcessorStatus,
    StateInfo,
    resolve,
    resource_status_for,
    to_naive_utc,
    utcnow,
)

logger = get_logger(__name__)

# 新規購読開始を拒否する状態 (既に課金または課金予定の購読がある)
BLOCKING_STATES = frozenset({
    LifecycleState.STRIPE_TRIAL,
    LifecycleState.ACTIVE,
    LifecycleState.GRACE_PERIOD,
    LifecycleState.PAST_DUE,
})

# Stripeスナップショットから購読レコードへそのまま書き写すフィールド
SNAPSHOT_FIELDS = (
    "trial_start",
    "trial_end",
    "current_period_start",
    "current_period_end",
    "cancel_at",
    "canceled_at",
)


class SubscriptionConflictError(Exception):
    """並行リクエストが先に購読を紐付けた"""


class PaymentMethodRequiredError(Exception):
    """初回請求書の支払いに使える支払い方法がない"""


@dataclass
class InitiateResult:
    stripe_subscription_id: str
    status: str
    client_secret: Optional[str] = None
    trial_days: int = 0
    reused: bool = False


@dataclass
class ConfirmResult:
    status: str
    state_info: StateInfo
    invoice_paid: bool = False
    activated_communities: int = 0


# =========================================================
# 参照
# =========================================================

def get_organizer_by_user(db: Session, user_id: str) -> Optional[Organizer]:
    return db.query(Organizer).filter(Organizer.user_id == str(user_id)).first()


def get_subscription_record(db: Session, organizer_id: int) -> Optional[OrganizerSubscription]:
    return db.query(OrganizerSubscription).filter(
        OrganizerSubscription.organizer_id == organizer_id
    ).first()


def get_subscription_by_stripe_id(db: Session, stripe_subscription_id: str) -> Optional[OrganizerSubscription]:
    if not stripe_subscription_id:
        return None
    return db.query(OrganizerSubscription).filter(
        OrganizerSubscription.stripe_subscription_id == stripe_subscription_id
    ).first()


def list_subscription_records(db: Session, organizer_id: int) -> list[OrganizerSubscription]:
    return db.query(OrganizerSubscription).filter(
        OrganizerSubscription.organizer_id == organizer_id
    ).all()


def get_or_create_subscription_record(db: Session, organizer: Organizer) -> OrganizerSubscription:
    """購読レコードを取得、なければ incomplete で作成 (作成日時がプラットフォームトライアルの起点)"""
    record = get_subscription_record(db, organizer.id)
    if record:
        return record

    record = OrganizerSubscription(
        organizer_id=organizer.id,
        status=ProcessorStatus.INCOMPLETE.value,
        placement_credits_available=0,
        placement_credits_used=0,
        created_at=utcnow(),
    )
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        # 同時リクエストが先に作成した
        db.rollback()
        record = get_subscription_record(db, organizer.id)
        if record is None:
            raise
        return record
    db.refresh(record)
    logger.info(f"購読レコード作成: organizer_id={organizer.id}")
    return record


def is_trial_eligible(organizer: Organizer, records: list[OrganizerSubscription]) -> bool:
    """Stripeトライアル付与可否 (一度でも購読を始めたら二度と付与しない)"""
    if organizer.trial_used:
        return False
    for record in records:
        if record.stripe_subscription_id:
            return False
        if record.trial_start or record.trial_end:
            return False
        if ProcessorStatus.parse(record.status) != ProcessorStatus.INCOMPLETE:
            return False
    return True


def has_blocking_subscription(record: Optional[OrganizerSubscription], now: Optional[datetime] = None) -> bool:
    """新規購読を開始できない状態か"""
    if record is None:
        return False
    return resolve(record, now).state in BLOCKING_STATES


# =========================================================
# コミュニティ公開状態
# =========================================================

def set_resource_status(db: Session, organizer_id: int, status: str) -> int:
    """主催者の全コミュニティの公開状態を変更 (コミットは呼び出し側)

    既に目的の状態のものは対象外。変更件数を返す。
    """
    if status not in ("active", "draft"):
        raise ValueError(f"不正なコミュニティ状態: {status}")
    count = db.query(Community).filter(
        Community.organizer_id == organizer_id,
        Community.status != status,
    ).update({Community.status: status}, synchronize_session=False)
    if count:
        logger.info(f"コミュニティ公開状態変更: organizer_id={organizer_id}, status={status}, 件数={count}")
    return count


def reconcile_visibility(db: Session, record: OrganizerSubscription, now: Optional[datetime] = None) -> int:
    """購読状態とコミュニティ公開状態のずれを補正"""
    info = resolve(record, now)
    target = resource_status_for(info.state)
    if target is None:
        return 0
    count = set_resource_status(db, record.organizer_id, target)
    if count:
        db.commit()
    return count


# =========================================================
# Stripe状態の反映
# =========================================================

def apply_subscription_snapshot(
    record: OrganizerSubscription,
    snapshot: dict,
    now: Optional[datetime] = None,
) -> bool:
    """Stripeの購読スナップショットを書き写す (コミットは呼び出し側)

    値の解釈は行わない。請求サイクルが進んでいればクレジットを再付与する。
    クレジットを再付与した場合 True を返す。
    """
    previous_period_start = to_naive_utc(record.current_period_start)
    new_period_start = snapshot.get("current_period_start")

    if snapshot.get("status"):
        record.status = snapshot["status"]
    if snapshot.get("stripe_customer_id"):
        record.stripe_customer_id = snapshot["stripe_customer_id"]
    if snapshot.get("stripe_subscription_id"):
        record.stripe_subscription_id = snapshot["stripe_subscription_id"]
    for field in SNAPSHOT_FIELDS:
        setattr(record, field, snapshot.get(field))

    rolled_over = new_period_start is not None and (
        previous_period_start is None or new_period_start > previous_period_start
    )
    if rolled_over and resolve(record, now).grants_credits:
        credits_service.reset_credits(record, new_period_start)
        return True
    return False


def _refresh_from_stripe(record: OrganizerSubscription, now: Optional[datetime] = None) -> bool:
    stripe_sub = stripe_service.retrieve_subscription(record.stripe_subscription_id)
    return apply_subscription_snapshot(record, stripe_service.subscription_snapshot(stripe_sub), now)


# =========================================================
# 購読開始・確定・解約
# =========================================================

def _subscription_metadata(organizer: Organizer) -> dict:
    return {"organizer_id": str(organizer.id), "user_id": str(organizer.user_id)}


def initiate_subscription(
    db: Session,
    organizer: Organizer,
    now: Optional[datetime] = None,
) -> InitiateResult:
    """購読開始: Stripe Subscription を支払い未確定で作成し SetupIntent を返す

    トライアルは条件付きUPDATEで先に確保し、購読の紐付けも読み取り時点から
    変わっていない場合のみ行う。競合に負けた場合はStripe側の購読を取り消す。
    既存の未確定購読があれば新規作成せず再利用する (二重送信対策)。
    """
    record = get_or_create_subscription_record(db, organizer)
    metadata = _subscription_metadata(organizer)

    if record.stripe_subscription_id and ProcessorStatus.parse(record.status) == ProcessorStatus.INCOMPLETE:
        stripe_sub = stripe_service.retrieve_subscription(record.stripe_subscription_id)
        processor_status = ProcessorStatus.parse(get_field(stripe_sub, "status"))

        if processor_status == ProcessorStatus.INCOMPLETE:
            setup_intent = stripe_service.create_setup_intent(record.stripe_customer_id, metadata)
            logger.info(f"未確定購読を再利用: organizer_id={organizer.id}, sub={record.stripe_subscription_id}")
            return InitiateResult(
                stripe_subscription_id=record.stripe_subscription_id,
                status=processor_status.value,
                client_secret=get_field(setup_intent, "client_secret"),
                trial_days=_trial_days_of(stripe_sub),
                reused=True,
            )

        if processor_status not in (ProcessorStatus.INCOMPLETE_EXPIRED, ProcessorStatus.CANCELED):
            # 確定処理の取りこぼし (Stripe側では既に開始済み)
            apply_subscription_snapshot(record, stripe_service.subscription_snapshot(stripe_sub), now)
            db.commit()
            logger.info(f"購読は開始済み: organizer_id={organizer.id}, status={processor_status.value}")
            return InitiateResult(
                stripe_subscription_id=record.stripe_subscription_id,
                status=processor_status.value,
                reused=True,
            )

    previous_sub_id = record.stripe_subscription_id
    eligible = is_trial_eligible(organizer, list_subscription_records(db, organizer.id))
    # Stripe呼び出しの前にトライアルを確保する (並行リクエストは付与なしになる)
    trial_claimed = eligible and _claim_trial(db, organizer.id)
    trial_days = settings.PROCESSOR_TRIAL_DAYS if trial_claimed else 0

    stripe_sub_id = None
    try:
        customer_id = record.stripe_customer_id
        if not customer_id:
            customer_id = stripe_service.create_customer(
                email=organizer.email,
                name=organizer.business_name or organizer.email,
                metadata=metadata,
            )

        price_id = stripe_service.get_price_id()
        stripe_sub = stripe_service.create_subscription(
            customer_id=customer_id,
            price_id=price_id,
            trial_days=trial_days or None,
            metadata=metadata,
        )
        stripe_sub_id = get_field(stripe_sub, "id")
        setup_intent = stripe_service.create_setup_intent(customer_id, metadata)

        if not _link_subscription(db, record.id, previous_sub_id, customer_id, stripe_sub_id):
            raise SubscriptionConflictError("別のリクエストで購読手続きが開始されました")
        db.commit()
    except (stripe.StripeError, SubscriptionConflictError):
        db.rollback()
        # ローカルに記録されない購読をStripe側に残さない
        if stripe_sub_id:
            try:
                stripe_service.cancel_subscription(stripe_sub_id, at_period_end=False)
            except stripe.StripeError as cancel_error:
                logger.error(f"未記録購読の取消失敗: {stripe_sub_id} - {cancel_error}")
        if trial_claimed:
            _release_trial(db, organizer.id)
        raise

    db.refresh(record)
    db.refresh(organizer)

    logger.info(
        f"購読開始: organizer_id={organizer.id}, sub={stripe_sub_id}, trial_days={trial_days}"
    )
    return InitiateResult(
        stripe_subscription_id=stripe_sub_id,
        status=record.status,
        client_secret=get_field(setup_intent, "client_secret"),
        trial_days=trial_days,
    )


def _claim_trial(db: Session, organizer_id: int) -> bool:
    """trial_used を条件付きUPDATEで立てる。確保できた場合のみ True"""
    claimed = db.query(Organizer).filter(
        Organizer.id == organizer_id,
        Organizer.trial_used.is_(False),
    ).update({Organizer.trial_used: True}, synchronize_session=False)
    db.commit()
    return claimed == 1


def _release_trial(db: Session, organizer_id: int):
    """開始に失敗した購読のために確保したトライアルを戻す (Stripe側の購読は取消済み)"""
    db.query(Organizer).filter(Organizer.id == organizer_id).update(
        {Organizer.trial_used: False}, synchronize_session=False
    )
    db.commit()


def _link_subscription(
    db: Session,
    record_id: int,
    previous_sub_id: Optional[str],
    customer_id: str,
    stripe_sub_id: str,
) -> bool:
    """読み取り時点から購読IDが変わっていない場合のみ新しい購読を紐付ける"""
    query = db.query(OrganizerSubscription).filter(OrganizerSubscription.id == record_id)
    if previous_sub_id is None:
        query = query.filter(OrganizerSubscription.stripe_subscription_id.is_(None))
    else:
        query = query.filter(OrganizerSubscription.stripe_subscription_id == previous_sub_id)
    updated = query.update(
        {
            OrganizerSubscription.stripe_customer_id: customer_id,
            OrganizerSubscription.stripe_subscription_id: stripe_sub_id,
            OrganizerSubscription.status: ProcessorStatus.INCOMPLETE.value,
        },
        synchronize_session=False,
    )
    return updated == 1


def _trial_days_of(stripe_sub) -> int:
    trial_start = get_field(stripe_sub, "trial_start")
    trial_end = get_field(stripe_sub, "trial_end")
    if not trial_start or not trial_end:
        return 0
    return max(0, round((int(trial_end) - int(trial_start)) / 86400))


def confirm_subscription(
    db: Session,
    organizer: Organizer,
    record: OrganizerSubscription,
    payment_method_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ConfirmResult:
    """購読確定: 支払い方法を既定に設定し、未払いの初回請求書を支払って状態を反映"""
    if payment_method_id:
        stripe_service.set_default_payment_method(
            record.stripe_customer_id, record.stripe_subscription_id, payment_method_id
        )

    stripe_sub = stripe_service.retrieve_subscription(record.stripe_subscription_id)
    invoice_paid = False

    if ProcessorStatus.parse(get_field(stripe_sub, "status")) == ProcessorStatus.INCOMPLETE:
        invoice = stripe_service.latest_invoice(stripe_sub)
        if invoice and not isinstance(invoice, str) and get_field(invoice, "status") == "open":
            pm = payment_method_id or stripe_service.get_default_payment_method(record.stripe_customer_id)
            if not pm:
                raise PaymentMethodRequiredError("お支払い方法が登録されていません。カード情報を登録してください。")
            stripe_service.pay_invoice(get_field(invoice, "id"), pm)
            invoice_paid = True
            stripe_sub = stripe_service.retrieve_subscription(record.stripe_subscription_id)

    apply_subscription_snapshot(record, stripe_service.subscription_snapshot(stripe_sub), now)
    db.commit()
    db.refresh(record)

    info = resolve(record, now)
    activated = 0
    if info.has_full_access:
        activated = set_resource_status(db, organizer.id, "active")
        if activated:
            db.commit()

    logger.info(
        f"購読確定: organizer_id={organizer.id}, status={record.status}, "
        f"state={info.state.value}, invoice_paid={invoice_paid}"
    )
    return ConfirmResult(
        status=record.status,
        state_info=info,
        invoice_paid=invoice_paid,
        activated_communities=activated,
    )


def cancel_subscription(db: Session, record: OrganizerSubscription) -> bool:
    """期間終了時の解約を予約。ステータスは変更しない

    既に解約予定なら何もせず False を返す。
    """
    if record.cancel_at or record.canceled_at:
        logger.info(f"解約予約済み: organizer_id={record.organizer_id}")
        return False

    stripe_sub = stripe_service.cancel_subscription(record.stripe_subscription_id, at_period_end=True)
    snapshot = stripe_service.subscription_snapshot(stripe_sub)
    record.cancel_at = snapshot["cancel_at"] or snapshot["current_period_end"] or record.current_period_end
    db.commit()
    logger.info(f"解約予約: organizer_id={record.organizer_id}, cancel_at={record.cancel_at}")
    return True


# =========================================================
# Webhook ハンドラ
# =========================================================

def _find_record_for_subscription(db: Session, data: dict) -> Optional[OrganizerSubscription]:
    """Subscription ID で検索し、なければ metadata の organizer_id で未紐付けのレコードを探す"""
    record = get_subscription_by_stripe_id(db, data.get("id"))
    if record:
        return record

    organizer_id = (data.get("metadata") or {}).get("organizer_id")
    if not organizer_id or not str(organizer_id).isdigit():
        return None
    record = get_subscription_record(db, int(organizer_id))
    if record and record.stripe_subscription_id in (None, data.get("id")):
        return record
    return None


def handle_subscription_changed(db: Session, data: dict, now: Optional[datetime] = None) -> bool:
    """customer.subscription.created / updated"""
    record = _find_record_for_subscription(db, data)
    if not record:
        logger.warning(f"subscription.updated: 購読レコード不明 sub={data.get('id')}")
        return False

    snapshot = stripe_service.subscription_snapshot(data)
    credits_reset = apply_subscription_snapshot(record, snapshot, now)
    db.commit()
    logger.info(
        f"購読更新: organizer_id={record.organizer_id}, status={record.status}, credits_reset={credits_reset}"
    )
    return True


def handle_subscription_deleted(db: Session, data: dict, now: Optional[datetime] = None) -> bool:
    """customer.subscription.deleted: 購読終了。コミュニティは即時非公開"""
    record = _find_record_for_subscription(db, data)
    if not record:
        logger.warning(f"subscription.deleted: 購読レコード不明 sub={data.get('id')}")
        return False

    snapshot = stripe_service.subscription_snapshot(data)
    ended_at = snapshot["ended_at"]
    record.status = ProcessorStatus.CANCELED.value
    record.canceled_at = snapshot["canceled_at"] or ended_at or record.canceled_at or to_naive_utc(now) or utcnow()
    if snapshot["cancel_at"]:
        record.cancel_at = snapshot["cancel_at"]
    # 終了済みの購読に猶予期間を残さない
    if ended_at and (record.current_period_end is None or record.current_period_end > ended_at):
        record.current_period_end = ended_at

    set_resource_status(db, record.organizer_id, "draft")
    db.commit()
    logger.info(f"購読終了: organizer_id={record.organizer_id}")
    return True


def record_payment(
    db: Session,
    record: OrganizerSubscription,
    invoice: dict,
    status: str,
) -> Optional[SubscriptionPayment]:
    """請求書の支払い結果を記録 (同一請求書・同一結果は1件のみ)"""
    invoice_id = get_field(invoice, "id")
    existing = db.query(SubscriptionPayment).filter(
        SubscriptionPayment.stripe_invoice_id == invoice_id,
        SubscriptionPayment.status == status,
    ).first()
    if existing:
        return existing

    lines = get_field(get_field(invoice, "lines"), "data", [])
    period = get_field(lines[0], "period") if lines else None
    failure_reason = None
    if status == "failed":
        error = get_field(invoice, "last_finalization_error") or get_field(invoice, "last_payment_error")
        failure_reason = get_field(error, "message", "payment_failed")[:255]

    payment = SubscriptionPayment(
        subscription_id=record.id,
        organizer_id=record.organizer_id,
        stripe_invoice_id=invoice_id,
        amount_paid=get_field(invoice, "amount_paid", 0) if status == "succeeded" else 0,
        currency=str(get_field(invoice, "currency", "cad")).upper(),
        status=status,
        billing_period_start=stripe_service.from_timestamp(get_field(period, "start")),
        billing_period_end=stripe_service.from_timestamp(get_field(period, "end")),
        receipt_url=get_field(invoice, "hosted_invoice_url"),
        failure_reason=failure_reason,
    )
    db.add(payment)
    return payment


def handle_invoice_payment_succeeded(db: Session, data: dict, now: Optional[datetime] = None) -> bool:
    """invoice.payment_succeeded / invoice.paid: 支払い記録 + Stripeから最新状態を取得"""
    sub_id = stripe_service.invoice_subscription_id(data)
    record = get_subscription_by_stripe_id(db, sub_id)
    if not record:
        logger.warning(f"invoice.payment_succeeded: 購読レコード不明 sub={sub_id}")
        return False

    record_payment(db, record, data, "succeeded")
    _refresh_from_stripe(record, now)
    db.commit()
    logger.info(f"支払い成功: organizer_id={record.organizer_id}, invoice={data.get('id')}")
    return True


def handle_invoice_payment_failed(db: Session, data: dict) -> bool:
    """invoice.payment_failed: 支払い失敗を記録し、継続中の購読は past_due にする"""
    sub_id = stripe_service.invoice_subscription_id(data)
    record = get_subscription_by_stripe_id(db, sub_id)
    if not record:
        logger.warning(f"invoice.payment_failed: 購読レコード不明 sub={sub_id}")
        return False

    record_payment(db, record, data, "failed")
    # 初回請求の失敗 (incomplete) はStripe側でも incomplete のまま
    if ProcessorStatus.parse(record.status) in (
        ProcessorStatus.ACTIVE,
        ProcessorStatus.TRIALING,
        ProcessorStatus.PAST_DUE,
    ):
        record.status = ProcessorStatus.PAST_DUE.value
    db.commit()
    logger.warning(f"支払い失敗: organizer_id={record.organizer_id}, invoice={data.get('id')}")
    return True
