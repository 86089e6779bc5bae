"""Core pipeline: process runner, target policy, risk, ledger and approval gate."""
