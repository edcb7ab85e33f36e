"""
Guardian: policy governance for Kubernetes clusters.

Reconciles GuardianPolicy resources, enforces them at admission time and
aggregates compliance across clusters.
"""

__version__ = "0.1.0"
