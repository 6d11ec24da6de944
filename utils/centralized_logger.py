"""
Centralized Error Logging System
Provides logging setup and structured escalation of ledger inconsistencies
"""

import logging
import json
import os
from typing import Optional, Dict, Any

from utils.datetime_helpers import get_naive_utc_now

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level: Optional[str] = None) -> None:
    """Configure root logging for scripts and jobs"""
    from config import Config

    logging.basicConfig(
        level=getattr(logging, (level or Config.LOG_LEVEL), logging.INFO),
        format=LOG_FORMAT
    )


class CentralizedLogger:
    """Structured error channel for ledger consistency problems"""

    def __init__(self, log_dir: Optional[str] = None):
        self.logger = logging.getLogger("bounty_ledger_errors")
        if log_dir:
            self.setup_file_handler(log_dir)

    def setup_file_handler(self, log_dir: str):
        """Setup file logging for persistent error tracking"""
        try:
            os.makedirs(log_dir, exist_ok=True)

            file_handler = logging.FileHandler(
                f"{log_dir}/ledger_errors.log",
                mode='a',
                encoding='utf-8'
            )
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            self.logger.addHandler(file_handler)

        except OSError as e:
            logging.getLogger(__name__).warning(f"Failed to setup file logging: {e}")

    def log_error(self,
                  error_type: str,
                  message: str,
                  user_id: Optional[str] = None,
                  context: Optional[Dict[str, Any]] = None,
                  level: int = logging.ERROR):
        """Log error with structured data"""

        error_data = {
            "timestamp": get_naive_utc_now().isoformat(),
            "error_type": error_type,
            "message": message,
            "user_id": user_id,
            "context": context or {}
        }

        self.logger.log(level, json.dumps(error_data, ensure_ascii=False, default=str))

    def log_critical_error(self, message: str, details: Optional[Dict] = None):
        """Log critical system errors (invariant violations, orphaned holds)"""
        self.log_error("CRITICAL", message, context=details, level=logging.CRITICAL)


# Global instance
centralized_logger = CentralizedLogger(os.getenv("BOUNTY_ERROR_LOG_DIR"))
