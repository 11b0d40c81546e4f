"""entity_sync: batch reconciliation of entities between two stores."""

__version__ = "0.1.0"
