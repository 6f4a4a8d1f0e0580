"""Campaign Dialer.

Outbound voice-call campaign core: dispatch queue, compliance gate,
provider webhook state machine, durable job processor and realtime
dashboard fan-out.
"""

__version__ = "0.1.0"
