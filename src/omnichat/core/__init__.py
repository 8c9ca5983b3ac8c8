"""
Core services: configuration, logging, credentials, accounting and the provider manager.
"""
