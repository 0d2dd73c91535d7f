"""Broker prefetch/QoS benchmark harness.

A producer and one or more consumers run as separate processes against a
shared broker (AMQP via pika, or MQTT v5 via paho-mqtt):
- the producer publishes a fixed batch of random payloads followed by `done`
- consumers subscribe under a configured prefetch limit, simulate work per
  message, ack after the work, and print one timing sample per message
- an optional fan-out control exchange carries a broadcast `start`, so
  consumers started at different times begin measuring together

See `prefetch_bench.app` for how to run.
"""
