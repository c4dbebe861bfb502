"""Redemption error taxonomy."""

from __future__ import annotations

from fastapi import status


class RedeemError(RuntimeError):
    """Domain failure carrying a stable error code and an HTTP-equivalent status."""

    def __init__(self, code: str, status_code: int = status.HTTP_400_BAD_REQUEST) -> None:
        super().__init__(code)
        self.code = code
        self.status_code = status_code

    def __repr__(self) -> str:
        return f"RedeemError(code={self.code!r}, status_code={self.status_code})"


def state_conflict(prefix: str, current_status: str) -> RedeemError:
    """Build the ``<prefix>_<status>`` error for a non-active batch or code."""

    status_code = (
        status.HTTP_403_FORBIDDEN if current_status == "disabled" else status.HTTP_409_CONFLICT
    )
    return RedeemError(f"{prefix}_{current_status}", status_code)


class DuplicateCodesError(RedeemError):
    """Raised when requested code strings already exist."""

    def __init__(self, codes: list[str]) -> None:
        super().__init__("duplicate_codes", status.HTTP_409_CONFLICT)
        self.codes = codes


REWARD_FAILED = "reward_failed"
REDEEM_FAILED = "redeem_failed"


__all__ = ["DuplicateCodesError", "REDEEM_FAILED", "REWARD_FAILED", "RedeemError", "state_conflict"]
