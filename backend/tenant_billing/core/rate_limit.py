"""レート制限設定（slowapi使用）"""
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from starlette.requests import Request
from starlette.responses import JSONResponse

from tenant_billing.core.session import extract_session_token


def get_client_key(request: Request) -> str:
    """
    レート制限キーを取得
    セッション (Cookie / Bearer) があればセッション単位、なければクライアントIP
    """
    session_id = extract_session_token(
        request.cookies.get("session_id"),
        request.headers.get("Authorization"),
    )
    if session_id:
        return f"session:{session_id}"
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        # カンマ区切りの最初のIPを取得
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


# Limiterインスタンス（アプリケーション全体で共有）
limiter = Limiter(
    key_func=get_client_key,
    default_limits=["100/minute"],
    storage_uri="memory://",
)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """
    レート制限超過時のカスタムエラーハンドラ
    """
    return JSONResponse(
        status_code=429,
        content={
            "detail": "リクエスト回数が上限を超えました。しばらく待ってから再度お試しください。",
            "retry_after": exc.detail,
        },
    )


# エンドポイント別のレート制限定義
SUBSCRIBE_RATE_LIMIT = "10/minute"      # 購読開始: Stripe Subscription作成を伴う
CONFIRM_RATE_LIMIT = "20/minute"        # 購読確定: 請求書支払いを伴う
CREDITS_SPEND_RATE_LIMIT = "30/minute"  # クレジット消費
