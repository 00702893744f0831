"""Ledger account provisioning pipeline.

Drains pending provisioning records, acquires one external ledger account
per subject through a rate-limited account service, and records each outcome
with conditional status transitions so batches can be resumed safely.
"""
