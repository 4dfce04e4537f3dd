from __future__ import annotations

# Re-export the provisioning workflow and its steps for centralized imports.

from channelprov.services.provisioning.account_creation import STRATEGIES, CreationOutcome, CreationTarget, create_account
from channelprov.services.provisioning.context import ProvisioningContext, StepBudget
from channelprov.services.provisioning.discovery import DiscoveredEntity, DiscoveryResult, discover_account, find_account_for_phone
from channelprov.services.provisioning.phone import PhoneRegistration, VerifiedPhone, register_phone, verify_phone
from channelprov.services.provisioning.polling import PollResult, poll_for_account
from channelprov.services.provisioning.subscription import subscribe_account
from channelprov.services.provisioning.token_exchange import TokenGrant, exchange_authorization
from channelprov.services.provisioning.workflow import MODES, ProvisionOverrides, ProvisionResult, ProvisioningWorkflow

__all__ = [
    "STRATEGIES",
    "CreationOutcome",
    "CreationTarget",
    "create_account",
    "ProvisioningContext",
    "StepBudget",
    "DiscoveredEntity",
    "DiscoveryResult",
    "discover_account",
    "find_account_for_phone",
    "PhoneRegistration",
    "VerifiedPhone",
    "register_phone",
    "verify_phone",
    "PollResult",
    "poll_for_account",
    "subscribe_account",
    "TokenGrant",
    "exchange_authorization",
    "MODES",
    "ProvisionOverrides",
    "ProvisionResult",
    "ProvisioningWorkflow",
]
