"""
Categorized failures surfaced by a rebalancing run.

Every error carries a machine-readable `reason` drawn from KNOWN_ERRORS;
the engine turns any of them into a FailureReport at its boundary.
"""

KNOWN_ERRORS = {
    "INVALID_REGISTRY_ADDRESS": "INVALID_REGISTRY_ADDRESS",
    "PROJECT_DISCOVERY_FAILED": "PROJECT_DISCOVERY_FAILED",
    "POSITION_DISCOVERY_FAILED": "POSITION_DISCOVERY_FAILED",
    "NAV_TARGET_ZERO": "NAV_TARGET_ZERO",
    "PROVIDER_ERROR": "PROVIDER_ERROR",
    "POLICY_ERROR": "POLICY_ERROR",
}


class RebalancerError(Exception):
    """Base class for failures reported to the caller."""
    reason = KNOWN_ERRORS["PROVIDER_ERROR"]


class InvalidRegistryAddressError(RebalancerError):
    reason = KNOWN_ERRORS["INVALID_REGISTRY_ADDRESS"]


class ProjectDiscoveryError(RebalancerError):
    reason = KNOWN_ERRORS["PROJECT_DISCOVERY_FAILED"]


class PositionDiscoveryError(RebalancerError):
    reason = KNOWN_ERRORS["POSITION_DISCOVERY_FAILED"]


class NavTargetZeroError(RebalancerError):
    reason = KNOWN_ERRORS["NAV_TARGET_ZERO"]


class ProviderError(RebalancerError):
    reason = KNOWN_ERRORS["PROVIDER_ERROR"]


class PolicyError(RebalancerError):
    reason = KNOWN_ERRORS["POLICY_ERROR"]


class ExecutionError(ProviderError):
    """
    A state-mutating call failed after earlier actions already landed.

    `actions` holds the ActionRecords confirmed before the failure; those
    transactions are irreversible and are reported, never compensated.
    """

    def __init__(self, message: str, actions: list | None = None):
        super().__init__(message)
        self.actions = list(actions or [])
