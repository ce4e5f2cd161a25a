"""VPC subnet selection."""
