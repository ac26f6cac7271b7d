"""Authorization decisions for tenantguard."""

from tenantguard.security.authorization import AuthorizationEngine, MasterOperation

__all__ = ["AuthorizationEngine", "MasterOperation"]
