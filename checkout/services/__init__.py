"""Checkout services: session lifecycle, settlement, webhooks and sweeps."""
