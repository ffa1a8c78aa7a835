"""共通依存関数: 認証・ロール制御"""
from typing import Optional
from fastapi import Request, HTTPException, Depends
from sqlalchemy.orm import Session

from tenant_billing.core.database import get_db
from tenant_billing.core.redis import get_redis
from tenant_billing.core.session import get_session, extract_session_token
from tenant_billing.models.organizer import Organizer


async def get_current_session(
    request: Request,
    r=Depends(get_redis),
) -> Optional[dict]:
    """Cookie / Bearer → Redis でセッション取得。未ログインならNone"""
    session_id = extract_session_token(
        request.cookies.get("session_id"),
        request.headers.get("Authorization"),
    )
    if not session_id:
        return None
    return await get_session(r, session_id)


async def require_session(
    session_data: Optional[dict] = Depends(get_current_session),
) -> dict:
    """ログイン必須。未ログインなら401"""
    if not session_data or not session_data.get("user_id"):
        raise HTTPException(status_code=401, detail="ログインが必要です")
    return session_data


async def require_organizer(
    session_data: dict = Depends(require_session),
    db: Session = Depends(get_db),
) -> Organizer:
    """主催者アカウント必須。未登録なら403"""
    organizer = db.query(Organizer).filter(
        Organizer.user_id == str(session_data["user_id"])
    ).first()
    if organizer is None:
        raise HTTPException(status_code=403, detail="主催者アカウントが必要です")
    return organizer


async def require_admin(
    session_data: dict = Depends(require_session),
) -> dict:
    """管理者権限必須。adminでなければ403"""
    if session_data.get("role") != "admin":
        raise HTTPException(status_code=403, detail="管理者権限が必要です")
    return session_data
