"""
Clients for the Kubernetes API and the metrics backend.
"""
