"""
Administration package: audited flag and allowlist mutations and audit queries.
"""
