"""Stack output reporting."""
