"""購読期限スイーパー (4時間ごと)

全購読レコードの状態を判定し、コミュニティの公開状態を補正する。
- ended → 公開中のコミュニティを非公開 (draft) に
- active / stripe_trial → 非公開のコミュニティを公開 (active) に
"""
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tenant_billing.core.database import SessionLocal
from tenant_billing.core.logging import get_logger
from tenant_billing.core.redis import write_sweeper_heartbeat
from tenant_billing.models.subscription import OrganizerSubscription
from tenant_billing.services.subscription_service import set_resource_status
from tenant_billing.services.subscription_state import resolve, resource_status_for, utcnow

logger = get_logger(__name__)


@dataclass
class SweepResult:
    checked: int = 0
    drafted: int = 0
    activated: int = 0
    errors: int = 0


def sweep_subscriptions(db: Session, now: Optional[datetime] = None) -> SweepResult:
    """全主催者の購読状態に合わせてコミュニティ公開状態を補正

    1件の失敗で全体を止めず、次のレコードへ進む。
    """
    now = now or utcnow()
    result = SweepResult()

    records = db.query(OrganizerSubscription).order_by(OrganizerSubscription.id).all()
    for record in records:
        result.checked += 1
        try:
            state = resolve(record, now).state
            target = resource_status_for(state)
            if target is None:
                continue
            count = set_resource_status(db, record.organizer_id, target)
            if not count:
                continue
            db.commit()
            if target == "draft":
                result.drafted += count
                logger.info(
                    f"期限切れ: organizer_id={record.organizer_id}, 非公開化={count}件",
                    extra={"organizer_id": record.organizer_id, "lifecycle_state": state.value},
                )
            else:
                result.activated += count
                logger.info(f"購読有効: organizer_id={record.organizer_id}, 公開={count}件")
        except SQLAlchemyError as e:
            db.rollback()
            result.errors += 1
            logger.error(
                f"スイープ失敗: organizer_id={record.organizer_id} - {e}",
                extra={"organizer_id": record.organizer_id},
            )

    logger.info(
        f"購読スイープ完了: 確認={result.checked}, 非公開化={result.drafted}, "
        f"公開={result.activated}, エラー={result.errors}"
    )
    return result


def run_subscription_sweep():
    """スケジューラから呼ばれるジョブ本体"""
    db = SessionLocal()
    try:
        now = utcnow()
        result = sweep_subscriptions(db, now)
        try:
            write_sweeper_heartbeat(now.isoformat(), asdict(result))
        except RedisError as e:
            logger.warning(f"スイーパーheartbeat書き込み失敗: {e}")
    except Exception as e:
        logger.error(f"購読スイープエラー: {e}")
    finally:
        db.close()
