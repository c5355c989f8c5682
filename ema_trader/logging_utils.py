"""
Logging utilities with structured logging support.
"""
from loguru import logger
import sys
import os
from pathlib import Path


AUDIT_TAGS = ("TRADE", "ORDER", "SIGNAL")


def setup_logging(
    logs_dir: str,
    level: str = "INFO",
    rotation: str = "1 day",
    retention: str = "30 days",
    format_type: str = "text",
    enable_console: bool = True
) -> None:
    """
    Set up logging with rotation and multiple outputs.

    Args:
        logs_dir: Directory for log files
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        rotation: When to rotate logs (e.g., "1 day", "500 MB")
        retention: How long to keep logs (e.g., "30 days")
        format_type: Format type ("json" or "text")
        enable_console: Whether to log to console
    """
    Path(logs_dir).mkdir(parents=True, exist_ok=True)

    # Remove default handler
    logger.remove()

    serialize = format_type == "json"
    log_format = (
        "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
        "{level: <8} | "
        "{name}:{function}:{line} | "
        "{message}"
    )

    if enable_console:
        logger.add(
            sys.stdout,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{module}</cyan>:<cyan>{function}</cyan> | "
                "<level>{message}</level>"
            ),
            level=level,
            colorize=not serialize,
            serialize=serialize,
            enqueue=True
        )

    # Runtime log (all messages at INFO and above)
    logger.add(
        os.path.join(logs_dir, "runtime.log"),
        format=log_format,
        level="INFO",
        rotation=rotation,
        retention=retention,
        compression="zip",
        enqueue=True,
        serialize=serialize
    )

    # Errors are kept longer
    logger.add(
        os.path.join(logs_dir, "errors.log"),
        format=log_format,
        level="ERROR",
        rotation=rotation,
        retention="60 days",
        compression="zip",
        enqueue=True,
        serialize=serialize
    )

    if level == "DEBUG":
        logger.add(
            os.path.join(logs_dir, "debug.log"),
            format=log_format,
            level="DEBUG",
            rotation=rotation,
            retention="7 days",
            compression="zip",
            enqueue=True,
            serialize=serialize
        )

    # Trade audit log: orders, fills, signals
    logger.add(
        os.path.join(logs_dir, "trades.log"),
        format=log_format,
        level="INFO",
        rotation=rotation,
        retention="90 days",
        compression="zip",
        enqueue=True,
        serialize=serialize,
        filter=lambda record: any(tag in record["message"] for tag in AUDIT_TAGS)
    )

    logger.info(f"Logging initialized: level={level}, dir={logs_dir}, format={format_type}")


def log_trade(action: str, symbol: str, qty: float, price: float, **kwargs) -> None:
    """
    Log a trade event with structured data.

    Args:
        action: Trade action (e.g., "BUY", "FILLED", "CLOSED")
        symbol: Stock symbol
        qty: Quantity (fractional shares allowed for notional orders)
        price: Trade price
        **kwargs: Additional trade metadata
    """
    extra_info = " | ".join([f"{k}={v}" for k, v in kwargs.items()])
    msg = f"TRADE | {action} | {symbol} | qty={qty} | price={price:.2f}"
    if extra_info:
        msg += f" | {extra_info}"
    logger.info(msg)


def log_signal(signal_type: str, symbol: str, price: float, ema5: float, ema8: float, ema22: float,
               user_id: str) -> None:
    """
    Log a detected crossover signal.

    Args:
        signal_type: "buy" or "sell"
        symbol: Stock symbol
        price: Latest close at detection time
        ema5: EMA-5 value
        ema8: EMA-8 value
        ema22: EMA-22 value
        user_id: User the signal was detected for
    """
    logger.info(
        f"SIGNAL | {signal_type.upper()} | {symbol} | price={price:.2f} | "
        f"ema5={ema5:.4f} ema8={ema8:.4f} ema22={ema22:.4f} | user={user_id}"
    )


def log_error_with_context(error: Exception, context: str, **kwargs) -> None:
    """
    Log an error with additional context.

    Args:
        error: Exception object
        context: Context description
        **kwargs: Additional context metadata
    """
    extra_info = " | ".join([f"{k}={v}" for k, v in kwargs.items()])
    msg = f"ERROR | {context} | {type(error).__name__}: {str(error)}"
    if extra_info:
        msg += f" | {extra_info}"
    logger.opt(exception=error).error(msg)
