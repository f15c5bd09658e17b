"""Sync engine: reconciliation, snapshots, apply and rollback."""
