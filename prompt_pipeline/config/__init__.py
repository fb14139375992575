"""
Pipeline configuration loading.
"""
