"""
Job distribution: envelopes, topology, brokers and the router.

  messaging/envelope.py      — ``JobEnvelope`` and the tagged-union payloads.
  messaging/topology.py      — exchanges, tier queues, dead-letter wiring.
  messaging/broker.py        — ``Broker`` contract and ``InMemoryBroker``.
  messaging/redis_broker.py  — ``RedisBroker`` for multi-process runs.
  messaging/router.py        — publish / subscribe / request-reply / retry policy.
"""
