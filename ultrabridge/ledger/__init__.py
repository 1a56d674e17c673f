"""Ledger integration for the Ultrametre bridge."""
