import redis.asyncio as aioredis
import redis as sync_redis
from tenant_billing.core.config import settings

SWEEPER_HEARTBEAT_KEY = "scheduler:subscription_sweeper:heartbeat"
SWEEPER_LAST_RESULT_KEY = "scheduler:subscription_sweeper:last_result"

# 非同期Redis (セッション参照用)
redis_pool = aioredis.ConnectionPool.from_url(
    settings.REDIS_URL,
    max_connections=20,
    decode_responses=True,
)


async def get_redis() -> aioredis.Redis:
    """FastAPI依存関数: 非同期Redisクライアント取得"""
    return aioredis.Redis(connection_pool=redis_pool)


# 同期Redis (Scheduler用)
sync_redis_pool = sync_redis.ConnectionPool.from_url(
    settings.REDIS_URL,
    max_connections=5,
    decode_responses=True,
)


def get_sync_redis() -> sync_redis.Redis:
    """同期Redisクライアント取得"""
    return sync_redis.Redis(connection_pool=sync_redis_pool)


def write_sweeper_heartbeat(timestamp: str, result: dict | None = None) -> None:
    """スイーパーの生存確認キーを書き込む (TTLはスイープ間隔の2倍)"""
    r = get_sync_redis()
    ttl = settings.SWEEP_INTERVAL_HOURS * 2 * 3600
    r.set(SWEEPER_HEARTBEAT_KEY, timestamp, ex=ttl)
    if result is not None:
        r.hset(SWEEPER_LAST_RESULT_KEY, mapping={k: str(v) for k, v in result.items()})
        r.expire(SWEEPER_LAST_RESULT_KEY, ttl)


async def get_sweeper_heartbeat(r: aioredis.Redis) -> str | None:
    """最終スイープ時刻を取得 (未実行ならNone)"""
    return await r.get(SWEEPER_HEARTBEAT_KEY)


async def check_redis_connection() -> bool:
    """Redis接続チェック"""
    try:
        r = await get_redis()
        await r.ping()
        return True
    except Exception:
        return False
