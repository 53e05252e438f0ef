"""
Breeze Portal: device registry and ESP device emulator for the Breeze smart WiFi portal.

Subscribes to device discovery/status/state topics on an MQTT broker, keeps an
in-memory registry of known devices, and dispatches commands back to devices.
"""
