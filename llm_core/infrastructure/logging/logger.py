import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from llm_core.config.settings import Settings

ROOT_LOGGER = "llm_core"


class JsonFormatter(logging.Formatter):
    """每条日志输出一行 JSON，合并 record.extra 中的字段。"""

    def __init__(self, redact_content: bool = False):
        super().__init__()
        self.redact_content = redact_content

    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if self.redact_content:
            msg = (msg or "")[:64]
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": msg,
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger(settings: Settings, handler: Optional[logging.Handler] = None) -> logging.Logger:
    """配置 llm_core 日志树。

    handler 不为空时日志写入该 handler（例如测试里的内存 handler）；
    否则写入 {log_dir}/llm_core.log。重复调用会替换之前安装的 handler。
    """

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(settings.log_level)
    for old in list(logger.handlers):
        if getattr(old, "_llm_core_handler", False):
            logger.removeHandler(old)
            old.close()

    if handler is None:
        log_dir = Path(settings.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_dir / "llm_core.log", encoding="utf-8")
    handler.setLevel(settings.log_level)
    handler.setFormatter(JsonFormatter(redact_content=settings.log_redact_content))
    handler._llm_core_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    return logger
