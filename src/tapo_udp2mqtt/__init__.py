"""
tapo-udp2mqtt — doorbell UDP broadcast to MQTT pulse bridge.

Listens for the doorbell's UDP "ring" datagrams, filters and debounces them,
and publishes "1" then (after the pulse duration) "0" to an MQTT topic with
a small built-in MQTT 3.1.1 QoS 0 client.
"""
