from autoflow.models.audit import AuditLog

__all__ = [
	"AuditLog",
]
