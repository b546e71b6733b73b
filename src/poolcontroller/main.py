"""Main entry point for the machine pool operator.

CREDENTIALS:
The operator authenticates only through role-based credentials (instance
profile, task role or web identity). Static access keys in the environment
stop startup with exit code 2.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .config import Config, ConfigurationError
from .manager import Manager
from .security import StaticCredentialsError, get_session

# Attributes every LogRecord has; anything else came in through extra=
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """Render a record and its extra fields as one JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Send JSON lines to stdout and quiet the AWS SDK loggers."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the AWS SDK
    for name in ("botocore", "boto3", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)


async def main() -> int:
    """Run the operator.

    Returns:
        Exit code (0 for success, 1 for configuration or runtime failure,
        2 for a credential violation).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Invalid operator configuration", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting machine pool operator",
        extra={
            "cluster": config.cluster_name,
            "region": config.region,
            "specs_dir": str(config.specs_dir),
        },
    )

    try:
        session = get_session(config.region)
    except StaticCredentialsError as e:
        logger.critical(
            "Refusing to start with static AWS credentials",
            extra={"error": str(e)},
        )
        return 2

    try:
        manager = Manager(
            config,
            ec2_client=session.client("ec2"),
            autoscaling_client=session.client("autoscaling"),
        )
    except Exception as e:
        logger.error(
            "Failed to initialize manager",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Shutting down on signal", extra={"signal": sig.name})
        manager.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await manager.run()
    except Exception as e:
        logger.exception("Manager stopped unexpectedly", extra={"error": str(e)})
        return 1

    logger.info("Machine pool operator stopped", extra={"cluster": config.cluster_name})
    return 0


def run() -> None:
    """Entry point for the operator process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
