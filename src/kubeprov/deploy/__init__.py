"""End-to-end deployment flow."""
