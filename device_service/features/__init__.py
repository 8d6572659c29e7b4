"""Feature modules: auth and realtime."""
