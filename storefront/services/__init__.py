"""Cart engine services: reconciliation, discounts, stores and remote clients."""
