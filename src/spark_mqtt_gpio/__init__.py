"""
spark_mqtt_gpio

This package provides a pin-level I/O adaptor (digital/analog read and
write, PWM, servo) and an event relay for a remote microcontroller
reachable through an MQTT v5 cloud relay.
"""
__version__ = "0.1.0"
