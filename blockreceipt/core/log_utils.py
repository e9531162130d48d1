import logging
import sys
import shutil
import time
from pathlib import Path
from logging import FileHandler
from pythonjsonlogger import jsonlogger

from blockreceipt.core.config import config, LOG_DIR

# text 或 json
LOG_FORMAT = str(config.get("LOG_FORMAT", "text")).lower()
LOG_TO_FILE = config.get_bool("LOG_TO_FILE", True)
SERVICE_NAME = "blockreceipt"
BACKUP_DIR = LOG_DIR / "backup"


class PipelineJsonFormatter(jsonlogger.JsonFormatter):
    """
    统一 JSON 日志字段: timestamp / level / logger / service
    任务相关的 extra (task_id, receipt_id, wallet) 会原样带出
    """
    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("timestamp"):
            log_record["timestamp"] = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(record.created))
        log_record["level"] = (log_record.get("level") or record.levelname).upper()
        log_record.setdefault("logger", record.name)
        log_record.setdefault("service", SERVICE_NAME)


if LOG_FORMAT == "json":
    FORMATTER = PipelineJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
else:
    FORMATTER = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")


class ArchiveRotatingFileHandler(FileHandler):
    """
    超过 LOG_MAX_BYTES (MB) 后把当前日志移动到 backup/ 并带时间戳重命名
    """
    def __init__(self, filename, mode="a", encoding="utf-8", delay=False):
        super().__init__(filename, mode, encoding, delay)
        self.max_bytes = config.get_int("LOG_MAX_BYTES", 5) * 1024 * 1024

    def emit(self, record):
        try:
            super().emit(record)
            if self.shouldRollover():
                self.doRollover()
        except Exception:
            self.handleError(record)

    def shouldRollover(self) -> bool:
        if self.stream is None:
            return False
        try:
            self.stream.seek(0, 2)
            return self.stream.tell() >= self.max_bytes
        except OSError:
            return False

    def doRollover(self):
        if self.stream:
            self.stream.close()
            self.stream = None

        log_path = Path(self.baseFilename)
        stamp = time.strftime("%Y-%m-%d_%H-%M-%S")
        BACKUP_DIR.mkdir(parents=True, exist_ok=True)
        try:
            if log_path.exists():
                shutil.move(str(log_path), str(BACKUP_DIR / f"{log_path.stem}-{stamp}{log_path.suffix}"))
        except OSError as e:
            sys.stderr.write(f"Log rotation failed: {e}\n")

        if not self.delay:
            self.stream = self._open()


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(f"{SERVICE_NAME}.{name}")
    log_level = str(config.get("LOG_LEVEL", "INFO")).upper()
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    if not logger.handlers:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(FORMATTER)
        logger.addHandler(console_handler)
        # 不向 root 冒泡
        logger.propagate = False

        if LOG_TO_FILE:
            LOG_DIR.mkdir(parents=True, exist_ok=True)
            file_handler = ArchiveRotatingFileHandler(str(LOG_DIR / f"{name}.log"))
            file_handler.setFormatter(FORMATTER)
            logger.addHandler(file_handler)

    return logger
