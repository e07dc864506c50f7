"""
Rules package.

Defines the flag model and the allowlist decision engine used by the Flags
Service. The engine implements the rollout state machine
(Disabled, Alpha, Beta, GA) and returns a deterministic enabled/disabled
decision with a reason string for observability.

Modules of interest:
- models: Flag, allowlist, audit and HTTP payload models.
- engine: AllowlistEvaluator, the pure decision function.
"""
