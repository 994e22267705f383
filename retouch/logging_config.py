"""
Logging setup.

Log files are split by day and by size:
    retouch_2026-01-12.log, retouch_2026-01-12_01.log, retouch_2026-01-12_02.log
"""

import glob
import logging
import os
from datetime import datetime, timedelta
from logging.handlers import RotatingFileHandler
from pathlib import Path


class DailyRotatingFileHandler(RotatingFileHandler):
    """
    Rotates on date change and on size.

    - one file per day: <base>_YYYY-MM-DD.log
    - over max_bytes: <base>_YYYY-MM-DD_01.log, _02.log, ...
    - files older than backup_days are removed at startup
    """

    def __init__(
        self,
        log_dir: str,
        base_name: str = "retouch",
        max_bytes: int = 20 * 1024 * 1024,
        backup_count: int = 5,
        backup_days: int = 14,
        encoding: str = "utf-8",
    ):
        self.log_dir = Path(log_dir)
        self.base_name = base_name
        self.backup_days = backup_days
        self._current_date = None

        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._update_filename()

        super().__init__(
            filename=str(self._current_file),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding=encoding,
        )
        self._cleanup_old_logs()

    @staticmethod
    def _today() -> str:
        return datetime.now().strftime("%Y-%m-%d")

    def _update_filename(self):
        today = self._today()
        if self._current_date != today:
            self._current_date = today
            self._current_file = self.log_dir / f"{self.base_name}_{today}.log"

    def shouldRollover(self, record):
        if self._current_date != self._today():
            return True
        return super().shouldRollover(record)

    def doRollover(self):
        if self._current_date == self._today():
            super().doRollover()
            return
        if self.stream:
            self.stream.close()
            self.stream = None
        self._update_filename()
        self.baseFilename = str(self._current_file)
        self.stream = self._open()

    def rotation_filename(self, default_name):
        # retouch_2026-01-12.log.1 -> retouch_2026-01-12_01.log
        if ".log." not in default_name:
            return default_name
        base, num = default_name.rsplit(".log.", 1)
        return f"{base}_{num.zfill(2)}.log"

    def _cleanup_old_logs(self):
        cutoff = datetime.now() - timedelta(days=self.backup_days)
        pattern = str(self.log_dir / f"{self.base_name}_*.log")

        for log_file in glob.glob(pattern):
            name = os.path.basename(log_file)
            date_part = name[len(self.base_name) + 1:].split(".log")[0].split("_")[0]
            try:
                if datetime.strptime(date_part, "%Y-%m-%d") < cutoff:
                    os.remove(log_file)
                    logging.debug(f"Removed old log: {log_file}")
            except (ValueError, OSError):
                continue


def setup_logging(
    log_dir: str = "logs",
    log_level: str = "INFO",
    max_bytes: int = 20 * 1024 * 1024,
    backup_count: int = 5,
    backup_days: int = 14,
    to_file: bool = True,
) -> None:
    """
    Configure the root logger.

    Args:
        log_dir: directory for log files
        log_level: DEBUG/INFO/WARNING/ERROR
        max_bytes: max size of one log file
        backup_count: max rotated files per day
        backup_days: days of history to keep
        to_file: also write rotating files (console only when False)
    """
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logging.INFO)
    root_logger.addHandler(console_handler)

    if to_file:
        app_handler = DailyRotatingFileHandler(
            log_dir=log_dir,
            base_name="retouch",
            max_bytes=max_bytes,
            backup_count=backup_count,
            backup_days=backup_days,
        )
        app_handler.setFormatter(formatter)
        app_handler.setLevel(logging.DEBUG)
        root_logger.addHandler(app_handler)

        # Errors also go to their own file
        error_handler = DailyRotatingFileHandler(
            log_dir=log_dir,
            base_name="error",
            max_bytes=max_bytes,
            backup_count=backup_count,
            backup_days=backup_days,
        )
        error_handler.setFormatter(formatter)
        error_handler.setLevel(logging.ERROR)
        root_logger.addHandler(error_handler)

    # Third-party noise
    for name in ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine", "PIL"):
        logging.getLogger(name).setLevel(logging.WARNING)

    if to_file:
        logging.info(f"Logging initialized: dir={Path(log_dir).absolute()}, max file size={max_bytes // 1024 // 1024}MB")
    else:
        logging.info("Logging initialized: console only")
