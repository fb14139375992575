"""
Prompt Pipeline - quota-guarded batch generation with job and cost tracking.
"""

__version__ = "0.1.0"
