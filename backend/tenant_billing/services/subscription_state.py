"""購読状態リゾルバ

保存済みの購読レコードと現在時刻だけから、正規のライフサイクル状態・
公開可否・アクセス可否・トライアル残日数を導出する純粋関数群。
DBやStripeへのアクセスは一切行わない。全エンドポイント・Webhook後の参照・
スイーパーはここを経由して状態を判定する。
"""
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from tenant_billing.core.config import settings

SECONDS_PER_DAY = 86400


class ProcessorStatus(str, Enum):
    """Stripe subscription.status の閉じた列挙 (未知の値は UNKNOWN)"""

    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw) -> "ProcessorStatus":
        """生のステータス文字列を列挙に変換。認識できない値は UNKNOWN"""
        if isinstance(raw, cls):
            return raw
        if not raw:
            return cls.UNKNOWN
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            return cls.UNKNOWN


class LifecycleState(str, Enum):
    """導出されるライフサイクル状態 (永続化しない)"""

    PLATFORM_TRIAL = "platform_trial"
    STRIPE_TRIAL = "stripe_trial"
    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"
    PAST_DUE = "past_due"
    ENDED = "ended"
    NONE = "none"


# クレジットを付与する状態 (支払い設定前のトライアル・猶予期間は対象外)
CREDIT_GRANTING_STATES = frozenset({LifecycleState.ACTIVE, LifecycleState.STRIPE_TRIAL})

# スイーパーが draft コミュニティを公開に戻す状態
ACTIVATING_STATES = frozenset({LifecycleState.ACTIVE, LifecycleState.STRIPE_TRIAL})

STATE_MESSAGES = {
    LifecycleState.PLATFORM_TRIAL: "無料トライアル期間中です。期間終了までにお支払い方法を登録してください。",
    LifecycleState.STRIPE_TRIAL: "トライアル期間中です。終了後に自動で課金が開始されます。",
    LifecycleState.ACTIVE: "購読は有効です。",
    LifecycleState.GRACE_PERIOD: "購読は解約済みです。支払い済み期間の終了までご利用いただけます。",
    LifecycleState.PAST_DUE: "お支払いが確認できていません。お支払い方法を更新してください。",
    LifecycleState.ENDED: "トライアルまたは購読期間が終了しました。引き続きご利用いただくには購読を開始してください。",
    LifecycleState.NONE: "購読情報がありません。",
}


@dataclass(frozen=True)
class StateInfo:
    """リゾルバの判定結果"""

    state: LifecycleState
    has_full_access: bool = False
    is_public_allowed: bool = False
    access_expires_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    trial_days_remaining: Optional[int] = None
    platform_trial_days_remaining: Optional[int] = None

    @property
    def grants_credits(self) -> bool:
        return self.state in CREDIT_GRANTING_STATES

    @property
    def message(self) -> str:
        return STATE_MESSAGES[self.state]


def utcnow() -> datetime:
    """現在時刻 (naive UTC, DBの保存形式に合わせる)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """tz付き日時をUTCに変換してtzinfoを外す"""
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def days_until(target: datetime, now: datetime) -> int:
    """残日数 = ceil((target - now) / 1日)、負にはしない"""
    seconds = (target - now).total_seconds()
    return max(0, math.ceil(seconds / SECONDS_PER_DAY))


def _ended() -> StateInfo:
    # ended では丸め誤差で「残り1日」と出ないよう残日数を0に固定
    return StateInfo(
        state=LifecycleState.ENDED,
        trial_days_remaining=0,
        platform_trial_days_remaining=0,
    )


def _full_access(state: LifecycleState, **kwargs) -> StateInfo:
    return StateInfo(state=state, has_full_access=True, is_public_allowed=True, **kwargs)


def _platform_trial(created_at: datetime, now: datetime) -> StateInfo:
    """作成日時起点のプラットフォームトライアル判定"""
    trial_end = created_at + timedelta(days=settings.PLATFORM_TRIAL_DAYS)
    if now >= trial_end:
        return _ended()
    return _full_access(
        LifecycleState.PLATFORM_TRIAL,
        access_expires_at=trial_end,
        trial_ends_at=trial_end,
        platform_trial_days_remaining=days_until(trial_end, now),
    )


def resolve(record, now: Optional[datetime] = None) -> StateInfo:
    """購読レコードからライフサイクル状態を導出する

    判定は以下の順で行い、最初に一致した分岐を採用する:
    1. Stripe購読なし → canceled なら ended、それ以外はプラットフォームトライアル
    2. trialing → トライアル終了前なら stripe_trial、以降は ended
    3. active → 解約予定あり: 期間終了前なら grace_period、以降は ended / なし: active
    4. past_due → past_due (Stripeの再請求期間中はアクセス維持)
    5. canceled → 期間終了前なら grace_period、以降は ended
    6. incomplete / incomplete_expired → 支払い未確定のためプラットフォームトライアル扱い
    7. その他 (未知のステータス) → ended
    """
    now = to_naive_utc(now) or utcnow()
    status = ProcessorStatus.parse(record.status)
    created_at = to_naive_utc(record.created_at) or now
    trial_end = to_naive_utc(record.trial_end)
    period_end = to_naive_utc(record.current_period_end)
    cancel_at = to_naive_utc(record.cancel_at)
    canceled_at = to_naive_utc(record.canceled_at)

    if not record.stripe_subscription_id:
        if status == ProcessorStatus.CANCELED:
            return _ended()
        return _platform_trial(created_at, now)

    if status == ProcessorStatus.TRIALING:
        # trial_end 欠損の旧レコードは作成日時 + プラットフォームトライアル期間で補完
        effective_trial_end = trial_end or created_at + timedelta(days=settings.PLATFORM_TRIAL_DAYS)
        if now >= effective_trial_end:
            return _ended()
        return _full_access(
            LifecycleState.STRIPE_TRIAL,
            trial_ends_at=effective_trial_end,
            trial_days_remaining=days_until(effective_trial_end, now),
        )

    if status == ProcessorStatus.ACTIVE:
        if cancel_at or canceled_at:
            access_end = cancel_at or period_end
            if access_end and access_end > now:
                return _full_access(LifecycleState.GRACE_PERIOD, access_expires_at=access_end)
            return _ended()
        return _full_access(LifecycleState.ACTIVE)

    if status == ProcessorStatus.PAST_DUE:
        return _full_access(LifecycleState.PAST_DUE, access_expires_at=period_end)

    if status == ProcessorStatus.CANCELED:
        if period_end and period_end > now:
            return _full_access(LifecycleState.GRACE_PERIOD, access_expires_at=period_end)
        return _ended()

    if status in (ProcessorStatus.INCOMPLETE, ProcessorStatus.INCOMPLETE_EXPIRED):
        return _platform_trial(created_at, now)

    return _ended()


def resolve_optional(record, now: Optional[datetime] = None) -> StateInfo:
    """レコード未作成の場合は none を返す"""
    if record is None:
        return StateInfo(state=LifecycleState.NONE)
    return resolve(record, now)


def resource_status_for(state: LifecycleState) -> Optional[str]:
    """状態から期待されるコミュニティ公開状態。補正不要なら None"""
    if state == LifecycleState.ENDED:
        return "draft"
    if state in ACTIVATING_STATES:
        return "active"
    return None
