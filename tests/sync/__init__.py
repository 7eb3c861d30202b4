"""End-to-end sync tests.

Start a real fieldsync server process and drive offline client devices
against it: priority drain on reconnect, retry after backoff, idempotent
batch flushes, feed catch-up across devices and stale cursor resync.
"""
