from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from tenant_billing.core.config import settings
from tenant_billing.core.logging import setup_logging, get_logger
from tenant_billing.core.rate_limit import limiter, rate_limit_exceeded_handler
from tenant_billing.routers import health, billing, webhooks_stripe, admin_billing

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """アプリケーションライフサイクル管理"""
    setup_logging(debug=settings.DEBUG, service="tenant_billing.api")
    logger.info("アプリケーション起動")
    yield
    logger.info("アプリケーション終了")


app = FastAPI(
    title=settings.SITE_NAME,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None,
)

# レート制限設定
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# --- バリデーションエラー日本語化 ---
_FIELD_JA = {
    "setup_intent_id": "SetupIntent ID",
    "return_url": "戻り先URL",
    "credits_needed": "必要クレジット数",
    "placements": "掲載枠",
    "duration_days": "掲載日数",
    "start_date": "開始日",
    "end_date": "終了日",
    "campaign_id": "キャンペーンID",
    "organizer_id": "主催者ID",
    "limit": "取得件数",
}


def _translate_error(err: dict) -> str:
    t = err.get("type", "")
    ctx = err.get("ctx", {})
    loc = err.get("loc", [])
    field = str(loc[-1]) if loc else ""
    fj = _FIELD_JA.get(field, field)

    if t == "missing":
        return f"{fj}は必須です"
    if t in ("int_parsing", "int_type"):
        return f"{fj}は数値で入力してください"
    if t in ("date_parsing", "date_from_datetime_parsing", "date_type"):
        return f"{fj}は日付 (YYYY-MM-DD) で入力してください"
    if t == "greater_than_equal":
        return f"{fj}は{ctx.get('ge', '')}以上の値を入力してください"
    if t == "less_than_equal":
        return f"{fj}は{ctx.get('le', '')}以下の値を入力してください"
    if t == "too_short":
        return f"{fj}は{ctx.get('min_length', '')}件以上指定してください"
    if t == "string_too_long":
        return f"{fj}は{ctx.get('max_length', '')}文字以下で入力してください"
    if t == "string_type":
        return f"{fj}は文字列で入力してください"
    if t == "value_error":
        # model_validator のメッセージ ("Value error, ..." の接頭辞を除く)
        return str(ctx.get("error", err.get("msg", "")))
    return f"{fj}: 入力値が不正です"


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    messages = [_translate_error(e) for e in exc.errors()]
    return JSONResponse(status_code=422, content={"detail": "、".join(messages)})


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ルーター登録
app.include_router(health.router)
app.include_router(billing.router)
app.include_router(webhooks_stripe.router)
app.include_router(admin_billing.router)
