"""Identity records and the shared identity directory."""
