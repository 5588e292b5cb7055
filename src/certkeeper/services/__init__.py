"""Service layer.

Each service bundles the operations behind one group of API endpoints
and delegates persistence to the store and renewals to the engine.
"""

from certkeeper.services.certificate import CertificateService
from certkeeper.services.deployment import DeploymentService
from certkeeper.services.deployment_settings import DeploymentSettingsStore

__all__ = [
    "CertificateService",
    "DeploymentService",
    "DeploymentSettingsStore",
]
