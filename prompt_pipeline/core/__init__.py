"""
Core modules for the prompt pipeline.

This package contains quota admission, job lifecycle tracking, generation,
usage accounting and batch orchestration.
"""
