"""
Operator entrypoint: ``python -m consumer_autoscaler``.
"""

import asyncio
import logging
import signal

from .config import load_operator_config
from .logging import setup_logging
from .operator.manager import ConsumerScalerOperator

logger = logging.getLogger(__name__)


def install_signal_handlers(loop: asyncio.AbstractEventLoop, operator: ConsumerScalerOperator) -> list[asyncio.Task]:
    """Stop the operator on SIGINT/SIGTERM.

    Returns the list the stop task is kept in once a signal arrives; only the
    first signal starts a stop.
    """
    stopping: list[asyncio.Task] = []

    def request_stop() -> None:
        if not stopping:
            stopping.append(loop.create_task(operator.stop()))

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, request_stop)
    return stopping


async def run() -> None:
    config = load_operator_config()
    setup_logging(level=config.logging.level, log_format=config.logging.format)
    config.validate()

    operator = ConsumerScalerOperator(config)
    await operator.setup()

    stopping = install_signal_handlers(asyncio.get_running_loop(), operator)

    logger.info(f"Configuration loaded for environment {config.environment.value}")
    await operator.start()
    if stopping:
        await stopping[0]


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
