"""Helpers shared across the storefront package."""
