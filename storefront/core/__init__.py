"""
Core package for configuration, logging, errors and security helpers
shared by every storefront service.
"""
