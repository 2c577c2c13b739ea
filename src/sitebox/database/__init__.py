from .engines import DatabaseEngineManager
from .provisioner import DatabaseProvisioner, ProvisionResult

__all__ = ["DatabaseEngineManager", "DatabaseProvisioner", "ProvisionResult"]
