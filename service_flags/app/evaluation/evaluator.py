"""
Flag evaluation orchestrator.

Looks a flag up, hands it to the allowlist engine and records the outcome in
the audit ledger. Any fault on the way resolves to a disabled result; only
malformed input raises.
"""

import asyncio
import time
from typing import List, Optional, Set, Sequence, Tuple

from shared.errors import DatabaseError, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.tracing import get_tracer, trace_operation

from ..persistence.base import AuditLedger, FlagStore
from ..rules.engine import AllowlistEvaluator
from ..rules.models import (
    AuditAction, AuditEvent, Decision, EvaluationContext, EvaluationResult, Reason, utcnow
)


class Evaluator:
    """Single and bulk flag evaluation with fail-safe fallback."""

    def __init__(self, store: FlagStore, ledger: AuditLedger,
                 rule_engine: Optional[AllowlistEvaluator] = None,
                 metrics: Optional[MetricsCollector] = None,
                 store_timeout: float = 0.25, audit_timeout: float = 1.0):
        self.store = store
        self.ledger = ledger
        self.rule_engine = rule_engine or AllowlistEvaluator()
        self.metrics = metrics
        self.store_timeout = store_timeout
        self.audit_timeout = audit_timeout
        self.logger = get_logger("flags.evaluator")
        self.tracer = get_tracer(__name__)
        self._pending_audits: Set[asyncio.Future] = set()

    async def evaluate(self, flag_name: str, context: EvaluationContext) -> EvaluationResult:
        """Evaluate one flag. Raises ValidationError for malformed input only."""
        self._validate_context(context)
        self._validate_flag_name(flag_name)
        return await self._evaluate_one(flag_name, context)

    async def evaluate_bulk(self, flag_names: Sequence[str], context: EvaluationContext) -> List[EvaluationResult]:
        """Evaluate several flags concurrently; results keep the input order."""
        self._validate_context(context)
        for name in flag_names:
            self._validate_flag_name(name)

        results = await asyncio.gather(*(self._evaluate_one(name, context) for name in flag_names))
        return list(results)

    async def drain(self):
        """Wait for audit writes that outlived their request."""
        if self._pending_audits:
            await asyncio.gather(*list(self._pending_audits), return_exceptions=True)

    @staticmethod
    def _validate_context(context: Optional[EvaluationContext]):
        if context is None:
            raise ValidationError("Evaluation context is required")
        if not context.correlation_id or not context.correlation_id.strip():
            raise ValidationError("Correlation ID is required", {"field": "correlationId"})
        if not context.environment or not context.environment.strip():
            raise ValidationError("Environment is required", {"field": "environment"})

    @staticmethod
    def _validate_flag_name(flag_name: str):
        if not isinstance(flag_name, str) or not flag_name.strip():
            raise ValidationError("Flag name is required", {"field": "flagName"})

    async def _evaluate_one(self, flag_name: str, context: EvaluationContext) -> EvaluationResult:
        start_time = time.perf_counter()

        with trace_operation(self.tracer, "flags.evaluate",
                             **{"flag.name": flag_name, "flag.environment": context.environment}) as span:
            decision, status = await self._decide(flag_name, context)
            span.set_attribute("flag.enabled", decision.enabled)
            span.set_attribute("flag.reason", decision.reason)

        result = EvaluationResult(
            flag_name=flag_name,
            enabled=decision.enabled,
            reason=decision.reason,
            correlation_id=context.correlation_id,
            evaluated_at=utcnow()
        )

        await self._audit(result, context)

        duration = time.perf_counter() - start_time
        if self.metrics:
            self.metrics.record_evaluation(status, result.enabled, result.reason, duration)

        self.logger.debug(
            "Flag evaluated",
            flag_name=flag_name,
            environment=context.environment,
            enabled=result.enabled,
            reason=result.reason,
            evaluation_time_ms=round(duration * 1000, 3)
        )
        return result

    async def _decide(self, flag_name: str, context: EvaluationContext) -> Tuple[Decision, str]:
        """Return the decision and a status label for metrics."""
        try:
            snapshot = await asyncio.wait_for(
                self.store.get_snapshot(flag_name, context.environment),
                timeout=self.store_timeout
            )
        except asyncio.TimeoutError:
            self.logger.warning("Flag lookup timed out", flag_name=flag_name,
                                timeout_seconds=self.store_timeout)
            return Decision(enabled=False, reason=Reason.STORE_TIMEOUT), "unknown"
        except DatabaseError as e:
            self.logger.warning("Flag store unavailable", flag_name=flag_name, operation=e.operation)
            return Decision(enabled=False, reason=Reason.STORE_UNAVAILABLE), "unknown"
        except Exception as e:
            self.logger.error("Flag lookup failed", flag_name=flag_name, error=str(e), exc_info=True)
            return Decision(enabled=False, reason=Reason.EVALUATION_ERROR), "unknown"

        if snapshot is None:
            return Decision(enabled=False, reason=Reason.FLAG_NOT_FOUND), "missing"

        try:
            return self.rule_engine.decide(snapshot, context), snapshot.flag.status.value
        except Exception as e:
            self.logger.error("Allowlist evaluation failed", flag_name=flag_name, error=str(e), exc_info=True)
            return Decision(enabled=False, reason=Reason.EVALUATION_ERROR), "unknown"

    async def _audit(self, result: EvaluationResult, context: EvaluationContext):
        event = AuditEvent(
            flag_name=result.flag_name,
            environment=context.environment,
            action=AuditAction.EVALUATED,
            correlation_id=result.correlation_id,
            reason=result.reason,
            result=result.enabled,
            tenant_id=context.tenant_id,
            user_id=context.user_id,
            timestamp=result.evaluated_at
        )

        # Shielded: a timeout or a cancelled caller must not abort the write
        task = asyncio.ensure_future(self.ledger.append_best_effort(event))
        self._pending_audits.add(task)
        task.add_done_callback(self._pending_audits.discard)

        try:
            written = await asyncio.wait_for(asyncio.shield(task), timeout=self.audit_timeout)
        except asyncio.TimeoutError:
            self.logger.warning("Audit append still in flight after timeout",
                                flag_name=result.flag_name, correlation_id=result.correlation_id)
            if self.metrics:
                self.metrics.increment_counter("audit_append_failures_total", mode="timeout")
            return

        if not written and self.metrics:
            self.metrics.increment_counter("audit_append_failures_total", mode="best_effort")
