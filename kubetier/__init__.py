"""
kubetier - lifecycle manager for tiered storage clusters on Kubernetes.

Resolves layered configuration into a ClusterSpec, validates it, synthesizes
StatefulSets/Services/ConfigMap and deploys, updates, inspects or deletes
clusters through the Kubernetes API.
"""

__version__ = "0.1.0"
