from __future__ import annotations


class TenantGuardError(Exception):
    """Base error for TenantGuard."""


class PolicyLookupError(TenantGuardError):
    """Country rollout policy could not be loaded."""


class OtpProviderError(TenantGuardError):
    """One-time code provider failed to verify a code."""


class InvalidPlanError(TenantGuardError):
    """Subscription references a plan that does not exist."""

    def __init__(self, plan_id: str | None) -> None:
        super().__init__(f"Subscription references unknown plan: {plan_id}")
        self.plan_id = plan_id
