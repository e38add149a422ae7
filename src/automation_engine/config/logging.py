import structlog
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional
from automation_engine.config.settings import settings


class LogConfig:
    """Centralized logging configuration"""

    def __init__(self):
        self.project_root = self._get_project_root()
        self.logs_dir = self.project_root / "logs"
        self.logs_dir.mkdir(exist_ok=True)

        # Log file paths
        self.main_log = self.logs_dir / "automation_engine.log"
        self.dispatch_log = self.logs_dir / "dispatch.log"
        self.agent_log = self.logs_dir / "agent_api.log"
        self.error_log = self.logs_dir / "errors.log"

        # Log levels
        self.log_level = logging.DEBUG if settings.debug else logging.INFO
        self.file_log_level = logging.DEBUG  # Always debug for files

        self.detailed_formatter = logging.Formatter(
            '%(asctime)s | %(name)-20s | %(levelname)-8s | %(funcName)-20s:%(lineno)-4d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        self.simple_formatter = logging.Formatter(
            '%(asctime)s | %(levelname)-8s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    def _get_project_root(self) -> Path:
        """Get the project root directory"""
        current_file = Path(__file__).resolve()
        # src/automation_engine/config/logging.py -> project root
        return current_file.parent.parent.parent.parent

    def create_rotating_handler(self, filepath: Path, max_bytes: int = 10*1024*1024, backup_count: int = 5) -> logging.Handler:
        """Create a rotating file handler with proper configuration"""
        handler = logging.handlers.RotatingFileHandler(
            filepath,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        handler.setLevel(self.file_log_level)
        handler.setFormatter(self.detailed_formatter)
        return handler

    def create_console_handler(self) -> logging.Handler:
        """Create console handler for stdout"""
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(self.log_level)

        # Use simple format for console in production, detailed in debug
        formatter = self.detailed_formatter if settings.debug else self.simple_formatter
        handler.setFormatter(formatter)
        return handler

    def create_error_handler(self) -> logging.Handler:
        """Create handler specifically for error logs"""
        handler = logging.handlers.RotatingFileHandler(
            self.error_log,
            maxBytes=5*1024*1024,
            backupCount=10,
            encoding='utf-8'
        )
        handler.setLevel(logging.ERROR)
        handler.setFormatter(self.detailed_formatter)
        return handler


def setup_logger(name: str, config: LogConfig, log_file: Optional[Path] = None,
                 level: int = logging.DEBUG, console: bool = True) -> logging.Logger:
    """Setup a named logger with its own file and the shared error log"""
    logger = logging.getLogger(name)

    logger.handlers.clear()
    logger.setLevel(level)

    if console:
        logger.addHandler(config.create_console_handler())
    if log_file:
        logger.addHandler(config.create_rotating_handler(log_file))
    logger.addHandler(config.create_error_handler())

    # Prevent duplicate logs
    logger.propagate = False

    return logger


def configure_logging():
    """Configure comprehensive logging for the entire application"""
    config = LogConfig()

    # Remove any existing handlers from root logger
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    root_logger.setLevel(config.log_level)
    root_logger.addHandler(config.create_console_handler())
    root_logger.addHandler(config.create_rotating_handler(config.main_log))
    root_logger.addHandler(config.create_error_handler())

    setup_specialized_loggers(config)

    configure_structlog(config)

    logger = structlog.get_logger("logging")
    logger.info("Logging system initialized",
                log_level=logging.getLevelName(config.log_level),
                logs_directory=str(config.logs_dir),
                main_log=str(config.main_log),
                debug_mode=settings.debug)


def setup_specialized_loggers(config: LogConfig):
    """Setup specialized loggers for different components"""
    # Step dispatch and state transitions
    setup_logger("dispatch", config, config.dispatch_log)
    setup_logger("automation_api", config, config.dispatch_log)

    # Execution agent HTTP traffic
    setup_logger("agent", config, config.agent_log)

    # Less verbose for DB
    setup_logger("database", config, config.main_log, level=logging.INFO, console=False)

    setup_logger("scheduler", config, config.main_log, level=logging.INFO)
    setup_logger("worker", config, config.main_log, level=logging.INFO)

    # APScheduler is only used for cron arithmetic
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def configure_structlog(config: LogConfig):
    """Configure structlog with proper processors"""
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    # Add appropriate renderer based on environment
    if settings.debug:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structlog logger for the given name"""
    return structlog.get_logger(name)
