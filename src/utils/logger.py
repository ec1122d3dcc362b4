import logging
from datetime import datetime
import os

class TradingLogger:
    def __init__(self, name: str = "copy_bot", log_dir: str = "data/logs", console_output: bool = False,
                 file_output: bool = True):
        self.name = name
        self.log_dir = log_dir

        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.DEBUG)

        # Components constructed more than once share the named logger
        if not self.logger.handlers:
            self._setup_handlers(console_output, file_output)

    def _setup_handlers(self, console_output: bool, file_output: bool):
        if console_output:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(logging.INFO)
            console_format = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
            console_handler.setFormatter(console_format)
            self.logger.addHandler(console_handler)

        if file_output:
            os.makedirs(self.log_dir, exist_ok=True)
            timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
            file_handler = logging.FileHandler(
                os.path.join(self.log_dir, f'{self.name}_{timestamp}.log')
            )
            file_handler.setLevel(logging.DEBUG)
            file_format = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            file_handler.setFormatter(file_format)
            self.logger.addHandler(file_handler)

    def child(self, suffix: str) -> "TradingLogger":
        """Logger for a sub-component that writes through this logger's handlers"""
        child = TradingLogger.__new__(TradingLogger)
        child.name = f"{self.name}.{suffix}"
        child.log_dir = self.log_dir
        child.logger = self.logger.getChild(suffix)
        return child

    def critical(self, message: str) -> None:
        """Log critical message"""
        self.logger.critical(message)

    def debug(self, message: str) -> None:
        """Log debug message"""
        self.logger.debug(message)

    def info(self, message: str) -> None:
        """Log info message"""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log warning message"""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log error message"""
        self.logger.error(message)
