"""
Main entry point for the Spark MQTT GPIO adaptor runner.

This module is responsible for:
- Parsing the command line and the YAML configuration.
- Building the Adaptor and connecting it to the device.
- Subscribing to the configured device events and logging them.
- Periodically reading the configured pins (every `read_interval`).
- Managing the overall application lifecycle (start, graceful stop).
"""

import argparse
import asyncio
import functools
import logging
import signal
import sys

from typing import Any, Dict, List

from spark_mqtt_gpio.adaptor import Adaptor, try_create
from spark_mqtt_gpio.config_loader import load_config
from spark_mqtt_gpio.errors import ConfigurationError, DeviceConnectionError


def setup_logging(level: int = logging.INFO):
    """
    Configures the global logging settings for the entire application.
    This should be called as early as possible during startup.
    """
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)-8s] %(name)s.%(funcName)s: %(message)s'
    )

logger = logging.getLogger(__name__)


def _settle(future: asyncio.Future, error):
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(None)


async def connect_adaptor(adaptor: Adaptor):
    """Awaits `adaptor.connect`, whose callback may fire on any thread."""
    loop = asyncio.get_running_loop()
    ready = loop.create_future()
    adaptor.connect(lambda error: loop.call_soon_threadsafe(_settle, ready, error))
    await ready


async def disconnect_adaptor(adaptor: Adaptor):
    loop = asyncio.get_running_loop()
    done = loop.create_future()
    adaptor.disconnect(lambda error: loop.call_soon_threadsafe(_settle, done, error))
    await done


def log_event(event_name: str, data: Any):
    logger.info(f"Event '{event_name}' received. Data: {data}")


def log_reading(pin: int, adaptor: Adaptor, error, value):
    if error is not None:
        logger.error(f"Reading pin {pin} failed: {error}")
    else:
        logger.info(f"Pin {pin} is {adaptor.pin_val(value)} ({value})")


async def pin_poll_loop(adaptor: Adaptor, pins: List[int], interval: float):
    """Background task reading the configured pins every `interval` seconds."""
    logger.info(f"Pin poll loop started for pins {pins} every {interval}s.")

    try:
        while True:
            for pin in pins:
                adaptor.digital_read(pin, functools.partial(log_reading, pin, adaptor))
            await asyncio.sleep(interval)

    except asyncio.CancelledError:
        logger.info("Pin poll loop stopped.")


async def shutdown(signal_name: str, adaptor: Adaptor, tasks: List[asyncio.Task]):
    """Graceful shutdown handler."""
    logger.info(f"Received exit signal {signal_name}...")

    await disconnect_adaptor(adaptor)

    # Cancel the runner and its background tasks (like the poll loop)
    for task in tasks:
        task.cancel()

    await asyncio.gather(*tasks, return_exceptions=True)


async def main_application_runner(config_path: str = "config.yaml") -> int:
    setup_logging()
    logger.info("Starting Spark adaptor...")

    config: Dict[str, Any] = load_config(config_path)

    adaptor = try_create(config)
    if isinstance(adaptor, ConfigurationError):
        return 1

    events: List[str] = list(config.get('events', []))
    for name in events:
        adaptor.on(name, functools.partial(log_event, name))

    try:
        await connect_adaptor(adaptor)
    except DeviceConnectionError as e:
        logger.error(f"Giving up: {e}")
        return 1

    if events:
        adaptor.listen_for_events(events)

    background: List[asyncio.Task] = []
    poll_pins: List[int] = list(config.get('poll_pins', []))
    if poll_pins:
        background.append(asyncio.create_task(pin_poll_loop(adaptor, poll_pins, adaptor.read_interval)))

    # Setup Signal Handlers for OS interrupts
    loop = asyncio.get_running_loop()
    tasks = [asyncio.current_task(), *background]
    signals = (signal.SIGINT, signal.SIGTERM)
    for sig in signals:
        loop.add_signal_handler(
            sig,
            lambda s=sig: asyncio.create_task(shutdown(s.name, adaptor, tasks))
        )

    logger.info("Adaptor is fully operational. Press Ctrl+C to exit.")

    try:
        await asyncio.Future()
    except asyncio.CancelledError:
        pass
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)
        for task in background:
            task.cancel()
    return 0


def run():
    parser = argparse.ArgumentParser(description="Relay events and pin readings from a Spark device.")
    parser.add_argument("config", nargs="?", default="config.yaml", help="path to the YAML config file")
    args = parser.parse_args()
    try:
        sys.exit(asyncio.run(main_application_runner(args.config)))
    except KeyboardInterrupt:
        # Handled by the signal handler, but good to catch here just in case.
        pass


if __name__ == "__main__":
    run()
