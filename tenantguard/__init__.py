"""tenantguard: tenant isolation, authorization and audit engine."""

__version__ = "0.1.0"
