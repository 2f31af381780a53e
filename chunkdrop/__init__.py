"""
chunkdrop - chunked peer-to-peer file transfer.

Files are split into fixed-size chunks, streamed over a peer channel
under a bounded concurrency window, and reassembled on the other side.
A watchdog asks for missing chunks when a transfer stalls, and every
completed transfer lands in a SQLite ledger.
"""

__version__ = "1.0.0"
