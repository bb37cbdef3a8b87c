"""
Cluster-state (orchestrator API) access.
"""
