"""
winfleet

Onboards Windows instances into a Kubernetes cluster and keeps them
consistent with the declared fleet.
"""

__version__ = "0.1.0"
