"""Live connection bookkeeping."""
