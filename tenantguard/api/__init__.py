"""HTTP surface for tenantguard."""
