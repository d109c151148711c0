"""
release-converger: one-shot convergence of Helm-managed stateful services.

Probe -> classify -> plan -> execute -> verify, once per service, in
dependency order.
"""

__version__ = "1.0.0"
