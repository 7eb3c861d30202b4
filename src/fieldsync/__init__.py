"""fieldsync: offline-first event synchronization for field-service operations."""

__version__ = "0.1.0"
