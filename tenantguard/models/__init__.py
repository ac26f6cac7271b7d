from tenantguard.models.tenant import AuditEventRecord, PrincipalRecord, TenantRecord

__all__ = ["AuditEventRecord", "PrincipalRecord", "TenantRecord"]
