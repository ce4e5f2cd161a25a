"""Kubernetes control plane provisioner (kubeprov).

Provision an EKS control plane, broker least-privilege access to it and read
back object state once it is ready, by talking to the AWS APIs directly.
"""

__version__ = "0.1.0"
__author__ = "Platform Engineering Team"
__license__ = "Apache-2.0"
