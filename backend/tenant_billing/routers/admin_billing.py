"""管理者: 購読スイープ手動実行・クレジットリセット"""
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from tenant_billing.core.database import get_db
from tenant_billing.core.logging import get_logger
from tenant_billing.routers.deps import require_admin
from tenant_billing.scheduler.subscription_sweeper import sweep_subscriptions
from tenant_billing.services import credits_service, subscription_service

router = APIRouter(prefix="/api/admin/billing", tags=["admin-billing"])
logger = get_logger(__name__)


@router.post("/sweep")
async def run_sweep(
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """購読スイープを即時実行"""
    result = sweep_subscriptions(db)
    logger.info(f"管理者による購読スイープ: user_id={admin.get('user_id')}")
    return asdict(result)


@router.post("/{organizer_id}/reset-credits")
async def reset_credits(
    organizer_id: int,
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """掲載クレジットを手動でリセット"""
    record = subscription_service.get_subscription_record(db, organizer_id)
    if not record:
        raise HTTPException(status_code=404, detail="購読が見つかりません")

    credits_service.reset_credits(record, record.current_period_start)
    db.commit()
    db.refresh(record)
    logger.info(f"管理者によるクレジットリセット: organizer_id={organizer_id}, user_id={admin.get('user_id')}")
    return {
        "organizer_id": organizer_id,
        "placement_credits_available": record.placement_credits_available,
        "placement_credits_used": record.placement_credits_used,
        "credits_reset_date": record.credits_reset_date,
    }
