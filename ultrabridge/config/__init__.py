"""Configuration helpers for the Ultrametre bridge daemon."""
