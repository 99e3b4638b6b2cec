"""
Logging setup and configuration for IdP Octelium Sync.

Console output goes to stderr so dry-run manifests printed on stdout stay
clean. File logging with rotation is enabled when a log directory is set.
"""

import os
import re
import sys
import logging
import logging.handlers
from typing import Dict, Any


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub credentials from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'token', 'secret', 'client_secret', 'credential',
        'authorization', 'access_token', 'refresh_token', 'api_key'
    ]

    def filter(self, record):
        """Mask sensitive values in the record message."""
        msg = record.getMessage() if hasattr(record, 'args') else str(record.msg)

        for keyword in self.SENSITIVE_KEYWORDS:
            # key=value
            msg = re.sub(rf'({keyword}\s*=\s*)[^\s,&}}\]]+', r'\1****', msg, flags=re.IGNORECASE)
            # "key": "value"
            msg = re.sub(rf'("{keyword}"\s*:\s*")[^"]*(")', r'\1****\2', msg, flags=re.IGNORECASE)
            # 'key': 'value'
            msg = re.sub(rf"('{keyword}'\s*:\s*')[^']*(')", r'\1****\2', msg, flags=re.IGNORECASE)

        msg = re.sub(r'(Authorization:?\s*(?:Bearer|Basic)\s+)[^\s,}\]]+', r'\1****', msg, flags=re.IGNORECASE)

        record.msg = msg
        record.args = ()
        return True


class LoggingManager:
    """
    Manages logging configuration for the sync process.

    Configures the root logger once per process; later calls are ignored.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
        """
        if self.configured:
            return

        logging_config = config if config else {}

        log_level = str(logging_config.get('level', 'INFO')).upper()
        self.log_dir = logging_config.get('log_dir')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = str(logging_config.get('console_level', 'INFO')).upper()

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        sensitive_filter = SensitiveDataFilter()

        if self.log_dir:
            os.makedirs(self.log_dir, exist_ok=True)
            file_handler = self._create_file_handler(rotation)
            file_handler.setLevel(getattr(logging, log_level, logging.INFO))
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            ))
            file_handler.addFilter(sensitive_filter)
            root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setLevel(getattr(logging, console_level, logging.INFO))
            console_handler.setFormatter(logging.Formatter('%(levelname)s %(message)s'))
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self.configured = True

        logger = logging.getLogger(__name__)
        logger.debug(f"Logging configured: level={log_level}, dir={self.log_dir}, "
                     f"console={console_enabled}")

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """
        Create the file handler for the configured rotation.

        Args:
            rotation: Rotation setting ('daily', 'midnight', or 'none')
        """
        log_file = os.path.join(self.log_dir, 'idp-sync.log')

        if rotation.lower() in ['daily', 'midnight']:
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(log_file, encoding='utf-8')

        return handler


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
    """
    _logging_manager.setup_logging(config)
