"""
Evaluation package: the orchestrator that turns a flag name and a caller
context into an audited, fail-safe result.
"""
