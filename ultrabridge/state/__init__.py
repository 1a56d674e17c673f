"""Runtime state for the Ultrametre bridge."""
