"""
Delivery pipeline: source -> build -> deploy orchestration for containerized services.
"""

__version__ = "1.0.0"
