"""Recurring job entrypoints for redeem maintenance."""

__all__ = ["redeem"]
