"""
Procurement Hub - Credential Vault

Carrier credentials are stored encrypted on the provider catalog row and,
optionally, on the company enablement row. The vault merges the two (company
values override provider values) and hands the plain result to a provider
instance. Decryption is an injected capability.
"""

import logging
from typing import Callable, Dict, Any, Optional

logger = logging.getLogger(__name__)


def _identity(value: Any) -> Any:
    return value


class CredentialVault:

    def __init__(self, decrypt: Optional[Callable[[Any], Any]] = None):
        self._decrypt = decrypt or _identity

    def _open(self, auth_config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if not auth_config:
            return {}
        return {key: self._decrypt(value) for key, value in auth_config.items() if value is not None}

    def credentials_for(
        self,
        provider: Dict[str, Any],
        company_provider: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Resolve credentials for one (provider, company) pair."""
        credentials = self._open(provider.get("auth_config"))
        if company_provider:
            credentials.update(self._open(company_provider.get("auth_config")))
        # Keys only; values never reach the log
        logger.debug(
            "Resolved credential keys for provider %s: %s",
            provider.get("provider_id"), sorted(credentials)
        )
        return credentials
