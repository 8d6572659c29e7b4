"""Infrastructure: database, logging, metrics, realtime fan-out, rate limiting and scheduling."""
