"""EKS cluster and node pool reconciliation and orchestration."""

__version__ = "0.1.0"
