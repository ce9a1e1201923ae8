"""
Room synchronization engine.

- deck: allowed vote values
- connections / registry: who is connected where, one session per room
- session: per-room state machine (single writer)
- broadcast: addressing and delivery of outbound events
- persistence: durable mirror contract, in-memory store, write-behind queue
- service: the service context wiring all of the above
"""
