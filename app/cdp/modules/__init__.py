"""
Feature modules live under this package.

Each module owns its models and service functions and reuses the platform
primitives (config, audit, DB session, errors).
"""
