"""Transport layer for the Ultrametre bridge."""
