"""
Shared API dependencies
"""

from typing import Optional

from ..audit import AuditTrail
from ..billing import BillingCycleOrchestrator
from ..config import BillingConfig, get_config
from ..repository import StorageBillingRepository
from ..storage import create_storage


class BillingSystem:
    """Billing ledger with all components initialized"""

    def __init__(self, config: Optional[BillingConfig] = None, backend: Optional[str] = None):
        self.config = config or get_config()
        self.storage = create_storage(backend or self.config.storage_backend, self.config.sqlite_path)
        self.audit_trail = AuditTrail(self.storage)
        self.repository = StorageBillingRepository(self.storage)
        self.orchestrator = BillingCycleOrchestrator(self.repository, self.config, self.audit_trail)


# Global billing system instance, built on first request
billing_system: Optional[BillingSystem] = None


def get_billing_system() -> BillingSystem:
    global billing_system
    if billing_system is None:
        billing_system = BillingSystem()
    return billing_system
