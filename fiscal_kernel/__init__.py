"""
Fiscal Kernel

Infrastructure core of the fiscal transaction engine:
- Collision-free invoice numbers and unit-scoped item codes
- Submission lifecycle persistence (pending -> success | error)
- Immutable Authority acknowledgements
- Structured JSON logging and typed errors
"""

__version__ = "0.1.0"
