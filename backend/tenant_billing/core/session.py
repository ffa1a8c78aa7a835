"""Redisセッション参照 (セッション発行は認証サービス側の責務)"""
from typing import Optional
import time
import redis.asyncio as aioredis
from tenant_billing.core.config import settings

SESSION_PREFIX = "session:"
SESSION_TTL = settings.SESSION_TIMEOUT_MINUTES * 60  # 秒


async def get_session(r: aioredis.Redis, session_id: str) -> Optional[dict]:
    """セッション情報を取得。アクセスごとにTTL更新"""
    if not session_id:
        return None
    key = f"{SESSION_PREFIX}{session_id}"
    data = await r.hgetall(key)
    if not data:
        return None
    # TTL更新 (アイドルタイムアウトリセット)
    await r.expire(key, SESSION_TTL)
    await r.hset(key, "last_accessed", str(int(time.time())))
    return data


def extract_session_token(cookie_value: Optional[str], authorization: Optional[str]) -> Optional[str]:
    """Cookie優先、なければ Authorization: Bearer からセッションIDを取り出す"""
    if cookie_value:
        return cookie_value
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
        return token or None
    return None
