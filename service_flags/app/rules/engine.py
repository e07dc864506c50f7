"""
Allowlist decision engine for the Flags Service.

The engine maps a flag snapshot and a caller context to a decision. It holds
no state and performs no I/O, so it can be exercised without a store or a
ledger.
"""

from typing import Dict

from .models import Decision, EvaluationContext, FlagSnapshot, FlagStatus, Reason

# Gated stages and the word used in their reason strings
GATED_STAGES: Dict[FlagStatus, str] = {
    FlagStatus.ALPHA: "alpha",
    FlagStatus.BETA: "beta",
}


class AllowlistEvaluator:
    """Rollout state machine over flag status."""

    def decide(self, snapshot: FlagSnapshot, context: EvaluationContext) -> Decision:
        """Decide whether the flag is enabled for the context."""
        status = snapshot.flag.status

        if status is FlagStatus.DISABLED:
            return Decision(enabled=False, reason=Reason.FLAG_DISABLED)

        if status is FlagStatus.GA:
            return Decision(enabled=True, reason=Reason.GA_ROLLOUT)

        if status in GATED_STAGES:
            return self._decide_gated(GATED_STAGES[status], snapshot, context)

        raise ValueError(f"Unhandled flag status: {status!r}")

    @staticmethod
    def _decide_gated(stage: str, snapshot: FlagSnapshot, context: EvaluationContext) -> Decision:
        # Tenant membership and user membership are each sufficient
        if context.tenant_id and context.tenant_id in snapshot.tenant_allowlist:
            return Decision(enabled=True, reason=f"tenant_in_{stage}_allowlist")

        if context.user_id and context.user_id in snapshot.user_allowlist:
            return Decision(enabled=True, reason=f"user_in_{stage}_allowlist")

        if context.tenant_id:
            return Decision(enabled=False, reason=f"tenant_not_in_{stage}_allowlist")

        return Decision(enabled=False, reason=f"not_in_{stage}_allowlist")
