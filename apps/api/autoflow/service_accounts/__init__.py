from autoflow.service_accounts.models import ServiceAccount
from autoflow.service_accounts.service import (
    Principal,
    ServiceAccountAuthenticator,
    ServiceAccountService,
    service_account_authenticator,
    service_account_service,
)

__all__ = [
    "Principal",
    "ServiceAccount",
    "ServiceAccountAuthenticator",
    "ServiceAccountService",
    "service_account_authenticator",
    "service_account_service",
]
