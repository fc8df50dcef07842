"""
Custodian integration core.

This package provides:
- Domain types and the error hierarchy
- Connection registry and token cache
- Feed validation and reconciliation
- Correlation and anomaly analysis over performance metrics
- The integration service that wires them together
"""

__version__ = "1.0.0"
