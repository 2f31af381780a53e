"""
Storage Module - Transfer History

Uses SQLite for the append-only ledger of completed transfers.
"""

from .database import TransferLedger, TransferRecord, TransferDirection, init_ledger

__all__ = ['TransferLedger', 'TransferRecord', 'TransferDirection', 'init_ledger']
