from fastapi import APIRouter, Depends

from tenant_billing.core.database import check_db_connection
from tenant_billing.core.redis import check_redis_connection, get_redis, get_sweeper_heartbeat

router = APIRouter()


@router.get("/health")
@router.get("/api/health")
async def health_check(r=Depends(get_redis)):
    """ヘルスチェックエンドポイント (スイーパーの最終実行時刻を含む)"""
    db_ok = check_db_connection()
    redis_ok = await check_redis_connection()
    last_sweep = await get_sweeper_heartbeat(r) if redis_ok else None

    status = "ok" if (db_ok and redis_ok) else "degraded"

    return {
        "status": status,
        "db": "connected" if db_ok else "disconnected",
        "redis": "connected" if redis_ok else "disconnected",
        "last_sweep_at": last_sweep,
    }
