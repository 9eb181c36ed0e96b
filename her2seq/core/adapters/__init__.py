"""Adapters between tabular inputs and the AnnData dataset."""

from her2seq.core.adapters.bulk_adapter import BulkCountsAdapter

__all__ = ["BulkCountsAdapter"]
