"""Cluster lifecycle control."""
