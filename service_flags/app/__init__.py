"""
Flags Service package for Flag Gate.

This package decides whether a feature flag is enabled for a tenant/user in
an environment, and records every decision and administrative change in an
append-only audit log. It provides:

- app.main: API surface for evaluation, flag administration, audit and health.
- app.rules: Flag models and the allowlist decision engine.
- app.evaluation: Fail-safe single and bulk evaluation with best-effort audit.
- app.admin: Audited flag and allowlist mutations and audit queries.
- app.persistence: In-memory and PostgreSQL flag stores and audit ledgers.

Guidelines:
- Evaluation never raises for infrastructure faults; it answers disabled.
- Administrative changes commit together with their audit event or not at all.
- Keep decisions deterministic and observable (metrics + logs + traces).
"""
