"""
Unified Logging Configuration

One stdout logging setup for the relay. Every module logs under the
"traderelay" namespace, either through the shared `logger` or through
get_logger(__name__).

Usage:
    from core.logging import logger, get_logger

    logger.info("Pipeline started")

    log = get_logger(__name__)
    log.debug("Received ticker message")

What goes where:
    DEBUG    - Per-message detail (normalizer drops, REST calls)
    INFO     - Lifecycle (connected, subscribed, sink started, shutdown steps)
    WARNING  - Contained failures that need no action (skipped exchange, broken subscriber)
    ERROR    - Contained failures worth a look (feed lost, write failed, trades lost)

Configuration:
    Level comes from the LOG_LEVEL setting. aiohttp and SQLAlchemy loggers
    are capped at WARNING unless LOG_LEVEL is DEBUG.
"""

import logging
import sys


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
NOISY_LOGGERS = ("aiohttp.access", "aiohttp.client", "sqlalchemy.engine", "sqlalchemy.pool")


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Configure the root handler and return the application logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Example:
        >>> logger = setup_logging(log_level="DEBUG")
        >>> logger.info("Pipeline running")
        2024-01-01 12:00:00 [INFO] traderelay: Pipeline running
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        stream=sys.stdout,
        force=True
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level if level == logging.DEBUG else logging.WARNING)

    app_logger = logging.getLogger("traderelay")
    app_logger.setLevel(level)
    return app_logger


# ============================================
# Initialize Logger with Settings
# ============================================

# core.config may still be initializing when it is the first importer
try:
    from core.config import settings
    log_level = settings.log_level
except ImportError:
    log_level = "INFO"

logger = setup_logging(log_level=log_level)


# ============================================
# Convenience Functions
# ============================================

def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a specific module or component.

    Args:
        name: Name for the logger (typically __name__)

    Returns:
        logging.Logger: Logger instance for the specified name

    Example:
        # In services/persistence_sink.py:
        from core.logging import get_logger
        logger = get_logger(__name__)  # "traderelay.services.persistence_sink"
    """
    return logging.getLogger(f"traderelay.{name}")


def set_log_level(level: str) -> None:
    """
    Change the relay's log level at runtime.

    Args:
        level: New log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Example:
        >>> set_log_level("DEBUG")
        >>> get_logger("services.pipeline").debug("now visible")
    """
    new_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(new_level)
    logging.getLogger().setLevel(new_level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(new_level if new_level == logging.DEBUG else logging.WARNING)


# ============================================
# Log Helper Functions
# ============================================

def log_api_request(exchange: str, endpoint: str, params: dict = None) -> None:
    """
    Log an API request with consistent formatting.

    Example:
        >>> log_api_request("gdax", "/products")
        [DEBUG] API Request: gdax /products
    """
    if params:
        logger.debug(f"API Request: {exchange} {endpoint} | Params: {params}")
    else:
        logger.debug(f"API Request: {exchange} {endpoint}")


def log_api_response(exchange: str, endpoint: str, status: int, response_time: float = None) -> None:
    """
    Log an API response with status and timing information.

    Example:
        >>> log_api_response("gdax", "/products", 200, 0.342)
        [DEBUG] API Response: gdax /products | Status: 200 | Time: 0.342s
    """
    time_str = f" | Time: {response_time:.3f}s" if response_time else ""
    logger.debug(f"API Response: {exchange} {endpoint} | Status: {status}{time_str}")


def log_websocket_event(exchange: str, event: str, instruments: str = None, details: str = None) -> None:
    """
    Log a WebSocket event with consistent formatting.

    Args:
        exchange: Exchange name
        event: Event type (e.g., "connected", "subscribed", "closed", "error")
        instruments: Instrument ids or topic (optional)
        details: Additional details (optional)

    Example:
        >>> log_websocket_event("gdax", "subscribed", "BTC-USD,ETH-USD")
        [INFO] WebSocket: gdax subscribed | Instruments: BTC-USD,ETH-USD
    """
    instruments_str = f" | Instruments: {instruments}" if instruments else ""
    details_str = f" | {details}" if details else ""

    level = logging.ERROR if event == "error" else logging.INFO
    logger.log(level, f"WebSocket: {exchange} {event}{instruments_str}{details_str}")


def log_pipeline_error(component: str, error: BaseException, exchange: str = None, level: int = logging.ERROR) -> None:
    """
    Record a contained pipeline failure with consistent formatting.

    Every failure that is dropped instead of raised (configuration skips,
    feed errors, rejected messages, write failures, broken subscribers)
    goes through here.

    Args:
        component: Reporting component (e.g., "sink", "router", "supervisor")
        error: The exception being recorded
        exchange: Exchange name, when the failure belongs to one
        level: Logging level (default ERROR)

    Example:
        >>> log_pipeline_error("sink", PersistenceError("database is locked"), exchange="gdax")
        [ERROR] Pipeline: sink | Exchange: gdax | PersistenceError: database is locked
    """
    exchange_str = f" | Exchange: {exchange}" if exchange else ""
    logger.log(level, f"Pipeline: {component}{exchange_str} | {type(error).__name__}: {error}")


logger.debug("Logging system initialized")
