"""Device service: realtime device events over WebSocket and SSE with a rotating token ledger."""

__version__ = "1.0.0"
