import structlog
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional
from tryon_vault.config.settings import settings

# Repository root, the directory holding src/
PROJECT_ROOT = Path(__file__).resolve().parents[3]


class LogConfig:
    """Where log files live and how their handlers are built."""
    
    def __init__(self, logs_dir: Optional[Path] = None):
        self.logs_dir = logs_dir or (Path(settings.log_dir) if settings.log_dir else PROJECT_ROOT / "logs")
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        
        self.main_log = self.logs_dir / "tryon_vault.log"
        self.session_log = self.logs_dir / "sessions.log"
        self.upstream_log = self.logs_dir / "upstream_api.log"
        self.error_log = self.logs_dir / "errors.log"
        
        self.console_level = logging.DEBUG if settings.debug else logging.INFO
        
        self.file_formatter = logging.Formatter(
            '%(asctime)s | %(name)-22s | %(levelname)-8s | %(module)s:%(lineno)d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        self.console_formatter = logging.Formatter(
            '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
            datefmt='%H:%M:%S'
        )
    
    def file_handler(self, filepath: Path, level: int = logging.DEBUG) -> logging.Handler:
        handler = logging.handlers.RotatingFileHandler(
            filepath,
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count,
            encoding='utf-8'
        )
        handler.setLevel(level)
        handler.setFormatter(self.file_formatter)
        return handler
    
    def console_handler(self) -> logging.Handler:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(self.console_level)
        handler.setFormatter(self.file_formatter if settings.debug else self.console_formatter)
        return handler
    
    def error_handler(self) -> logging.Handler:
        return self.file_handler(self.error_log, level=logging.ERROR)


def configure_logging(logs_dir: Optional[Path] = None) -> LogConfig:
    """Wire stdlib handlers and structlog for the whole service."""
    config = LogConfig(logs_dir)
    
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(config.console_level)
    root_logger.addHandler(config.console_handler())
    root_logger.addHandler(config.file_handler(config.main_log))
    root_logger.addHandler(config.error_handler())
    
    setup_specialized_loggers(config)
    configure_structlog()
    
    structlog.get_logger("logging").info(
        "Logging system initialized",
        log_level=logging.getLevelName(config.console_level),
        logs_directory=str(config.logs_dir),
        debug_mode=settings.debug
    )
    return config


def _attach(logger: logging.Logger, config: LogConfig, log_file: Path, level: int, console: bool = True):
    logger.handlers.clear()
    logger.setLevel(level)
    logger.addHandler(config.file_handler(log_file))
    if console:
        logger.addHandler(config.console_handler())
    logger.addHandler(config.error_handler())
    logger.propagate = False


def setup_specialized_loggers(config: LogConfig):
    """Route component loggers to their own files."""
    
    # Session vault and sweeper share the session log
    _attach(logging.getLogger("session"), config, config.session_log, logging.DEBUG)
    _attach(logging.getLogger("sweeper"), config, config.session_log, logging.INFO)
    
    # Replicate API traffic and the polling loop that drives it
    _attach(logging.getLogger("replicate"), config, config.upstream_log, logging.DEBUG)
    _attach(logging.getLogger("orchestrator"), config, config.upstream_log, logging.INFO)
    
    # Limiter rejections stay out of the console
    _attach(logging.getLogger("rate_limiter"), config, config.main_log, logging.INFO, console=False)


def configure_structlog():
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


def mask_token(token: Optional[str]) -> str:
    """Shorten a session token for log output."""
    if not token or not isinstance(token, str):
        return "<none>"
    return f"{token[:8]}..."
