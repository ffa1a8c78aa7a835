"""掲載クレジット管理

購読1サイクルごとに PLACEMENT_CREDITS_PER_CYCLE 分のクレジットを付与し、
スポンサー掲載の作成時に消費する。利用可否は購読状態で判定する
(active / stripe_trial のみ利用可)。
"""
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session

from tenant_billing.core.config import settings
from tenant_billing.core.logging import get_logger
from tenant_billing.models.subscription import OrganizerSubscription
from tenant_billing.models.placement_credit_usage import PlacementCreditUsage
from tenant_billing.services.subscription_state import (
    LifecycleState,
    resolve_optional,
    to_naive_utc,
    utcnow,
)

logger = get_logger(__name__)


@dataclass
class CreditCheckResult:
    has_credits: bool
    available: int
    used: int
    reset_date: Optional[datetime]
    state: LifecycleState
    message: str


@dataclass
class CreditDeductionResult:
    success: bool
    remaining: int
    deducted: int = 0
    usage_id: Optional[int] = None
    error: Optional[str] = None


def calculate_credits_needed(placements: int, duration_days: int) -> int:
    """必要クレジット = 掲載枠数 × 掲載日数"""
    return max(0, placements) * max(0, duration_days)


def placement_duration_days(start_date: date, end_date: date) -> int:
    """掲載日数 (開始日・終了日を含む)"""
    return (end_date - start_date).days + 1


def _get_record(db: Session, organizer_id: int) -> Optional[OrganizerSubscription]:
    return db.query(OrganizerSubscription).filter(
        OrganizerSubscription.organizer_id == organizer_id
    ).first()


def _usable(record: OrganizerSubscription) -> int:
    return max(0, (record.placement_credits_available or 0) - (record.placement_credits_used or 0))


def check_credits(
    db: Session,
    organizer_id: int,
    needed: int = 1,
    now: Optional[datetime] = None,
) -> CreditCheckResult:
    """利用可能クレジットを確認 (書き込みなし)"""
    now = to_naive_utc(now) or utcnow()
    record = _get_record(db, organizer_id)
    info = resolve_optional(record, now)

    if record is None or not info.grants_credits:
        if info.state == LifecycleState.PLATFORM_TRIAL:
            message = "掲載クレジットはお支払い方法の登録後にご利用いただけます。"
        else:
            message = "掲載クレジットを利用するには有効な購読が必要です。"
        return CreditCheckResult(
            has_credits=False,
            available=0,
            used=record.placement_credits_used if record else 0,
            reset_date=record.credits_reset_date if record else None,
            state=info.state,
            message=message,
        )

    available = _usable(record)
    has_credits = available >= needed
    if has_credits:
        message = f"利用可能な掲載クレジット: {available}"
    else:
        message = f"掲載クレジットが不足しています (必要: {needed}, 残り: {available})"

    return CreditCheckResult(
        has_credits=has_credits,
        available=available,
        used=record.placement_credits_used or 0,
        reset_date=record.credits_reset_date,
        state=info.state,
        message=message,
    )


def deduct_credits(
    db: Session,
    organizer_id: int,
    amount: int,
    now: Optional[datetime] = None,
    campaign_id: Optional[str] = None,
    placements: Optional[list] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> CreditDeductionResult:
    """クレジットを消費

    残高確認と加算を1本の条件付きUPDATEで行うため、並行リクエストでも
    used が available を超えることはない。失敗時は何も書き込まない。
    """
    if amount <= 0:
        return CreditDeductionResult(success=False, remaining=0, error="消費するクレジット数が不正です")

    now = to_naive_utc(now) or utcnow()
    record = _get_record(db, organizer_id)
    info = resolve_optional(record, now)
    if record is None or not info.grants_credits:
        return CreditDeductionResult(
            success=False,
            remaining=0,
            error="掲載クレジットを利用するには有効な購読が必要です",
        )

    updated = db.query(OrganizerSubscription).filter(
        OrganizerSubscription.id == record.id,
        OrganizerSubscription.placement_credits_used + amount <= OrganizerSubscription.placement_credits_available,
    ).update(
        {OrganizerSubscription.placement_credits_used: OrganizerSubscription.placement_credits_used + amount},
        synchronize_session=False,
    )

    if updated != 1:
        db.rollback()
        db.refresh(record)
        remaining = _usable(record)
        logger.info(f"クレジット不足: organizer_id={organizer_id}, 要求={amount}, 残り={remaining}")
        return CreditDeductionResult(
            success=False,
            remaining=remaining,
            error=f"掲載クレジットが不足しています (必要: {amount}, 残り: {remaining})",
        )

    usage = PlacementCreditUsage(
        organizer_id=organizer_id,
        subscription_id=record.id,
        campaign_id=campaign_id,
        placements_used=list(placements or []),
        credits_deducted=amount,
        start_date=start_date,
        end_date=end_date,
    )
    db.add(usage)
    db.commit()
    db.refresh(record)
    db.refresh(usage)

    remaining = _usable(record)
    logger.info(f"クレジット消費: organizer_id={organizer_id}, 消費={amount}, 残り={remaining}")
    return CreditDeductionResult(success=True, remaining=remaining, deducted=amount, usage_id=usage.id)


def reset_credits(record: OrganizerSubscription, period_start: Optional[datetime] = None) -> OrganizerSubscription:
    """サイクル開始時のクレジット付与 (コミットは呼び出し側)

    次回リセット日 = 期間開始日 + 1ヶ月
    """
    anchor = to_naive_utc(period_start) or record.current_period_start or utcnow()
    record.placement_credits_available = settings.PLACEMENT_CREDITS_PER_CYCLE
    record.placement_credits_used = 0
    record.credits_reset_date = anchor + relativedelta(months=1)
    logger.info(
        f"クレジットリセット: organizer_id={record.organizer_id}, "
        f"付与={settings.PLACEMENT_CREDITS_PER_CYCLE}, 次回={record.credits_reset_date}"
    )
    return record


def get_credit_usage_history(db: Session, organizer_id: int, limit: int = 50) -> list[PlacementCreditUsage]:
    """クレジット使用履歴 (新しい順)"""
    return db.query(PlacementCreditUsage).filter(
        PlacementCreditUsage.organizer_id == organizer_id
    ).order_by(PlacementCreditUsage.created_at.desc(), PlacementCreditUsage.id.desc()).limit(limit).all()
