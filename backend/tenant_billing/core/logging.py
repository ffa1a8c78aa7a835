import logging
import sys
import json
from datetime import datetime, timezone

# extra= で渡されたときだけ出力する課金コンテキスト
CONTEXT_FIELDS = (
    "organizer_id",
    "stripe_subscription_id",
    "stripe_event_id",
    "event_type",
    "lifecycle_state",
)


class JSONFormatter(logging.Formatter):
    """構造化JSONログフォーマッター (課金コンテキスト付き)"""

    def __init__(self, service: str = "tenant_billing"):
        super().__init__()
        self.service = service

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = {
            field: getattr(record, field)
            for field in CONTEXT_FIELDS
            if getattr(record, field, None) is not None
        }
        if context:
            log_entry["context"] = context
        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False, default=str)


def setup_logging(debug: bool = False, service: str = "tenant_billing"):
    """ロギング設定を初期化 (APIプロセスとスケジューラ共通)"""
    level = logging.DEBUG if debug else logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(service))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    # SQLエコーは SQL_ECHO 設定で制御する
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    # Stripe SDK はリクエストごとにINFOを出すため抑制
    logging.getLogger("stripe").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.INFO if debug else logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
