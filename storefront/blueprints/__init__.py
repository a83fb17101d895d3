"""HTTP blueprints: cart API, health checks and Prometheus metrics."""
