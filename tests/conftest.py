"""
Pytest Configuration and Fixtures for the spark_mqtt_gpio project.

This module installs gpiozero's MockFactory so the local pin client runs
on any development machine, and provides a stubbed device client (the
"board") that the Adaptor tests drive instead of the MQTT relay.
"""

import sys
import logging

import pytest
from gpiozero import Device
from gpiozero.pins.mock import MockFactory, MockPWMPin

from spark_mqtt_gpio.adaptor import Adaptor

# --- Configure GPIO Zero to use MockFactory ---
# MockPWMPin because the local client drives PWM and servo pins.
_mock_factory_instance = MockFactory(pin_class=MockPWMPin)
Device.pin_factory = _mock_factory_instance


@pytest.fixture(scope="session", autouse=True)
def setup_test_logging():
    """
    Configures the Python logging framework globally for all tests.
    Because tests bypass main.py, this ensures our logs are formatted
    and visible during test runs.
    """
    formatter = logging.Formatter(fmt="%(levelname)-8s %(message)s - %(funcName)s:%(lineno)d ")
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(formatter)
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)


@pytest.fixture(autouse=True)
def reset_mock_gpio_pins_before_each_test():
    """
    Resets the MockFactory's pins before each test to ensure a clean state.
    """
    _mock_factory_instance.reset()


@pytest.fixture
def mock_factory():
    return _mock_factory_instance


@pytest.fixture
def board(mocker):
    """
    A stand-in device client. It reports ready immediately and answers
    every read with 'data'.
    """
    board = mocker.MagicMock(name="board")
    board.start.side_effect = lambda on_ready: on_ready(None)
    board.digital_read.side_effect = lambda pin, callback: callback(None, "data")
    board.analog_read.side_effect = lambda pin, callback: callback(None, "data")
    return board


@pytest.fixture
def adaptor(board):
    return Adaptor(
        {"device_id": "deviceId", "access_token": "accessToken", "read_interval": 1000},
        client_factory=lambda access_token, device_id: board,
    )


@pytest.fixture
def connected_adaptor(adaptor):
    adaptor.connect(lambda error: None)
    return adaptor
