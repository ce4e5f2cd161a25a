"""Post-provision actions against a live cluster."""
