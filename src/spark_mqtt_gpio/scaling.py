"""
Value scaling policies for the write operations.

Callers express writes as a logical level (0 or 1); the device expects a
0-255 duty value for pulse-width writes and a 0-180 angle for servo
writes. Values are not clamped, robot logic depends on the plain product.
"""
import logging

logger = logging.getLogger(__name__)

PULSE_WIDTH_MAX = 255
ANGLE_MAX = 180


def scale(value, maximum: int):
    if not 0 <= value <= 1:
        logger.warning(f"Value {value} is outside 0..1, scaled result {value * maximum} exceeds the 0..{maximum} device range")
    return value * maximum


def pulse_width(value):
    return scale(value, PULSE_WIDTH_MAX)


def angle(value):
    return scale(value, ANGLE_MAX)
