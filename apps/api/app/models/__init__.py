from app.models.audit import AuditLog
from app.crm.models import CRMDeal, CRMDealForecastSnapshot

__all__ = [
	"AuditLog",
	"CRMDeal",
	"CRMDealForecastSnapshot",
]
