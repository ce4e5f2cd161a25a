"""Thin wrappers around boto3 and the Kubernetes client."""
