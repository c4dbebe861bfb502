"""Redeem maintenance jobs."""

from .reconciliation import run_redeem_reconciliation  # noqa: F401
