"""Append-only event store with batched idempotent producers and paginated consumers."""

__version__ = "0.1.0"
__all__ = ["api", "deduper", "consumer", "producer", "store", "dapp_radar", "canister"]