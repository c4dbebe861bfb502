from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict, Mapping


@dataclass
class RedeemSnapshot:
    outcomes: Dict[str, int]
    errors: Dict[str, int]
    rewards: Dict[str, int]
    compensations: Dict[str, int]
    reconciliation: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "outcomes": dict(self.outcomes),
            "errors": dict(self.errors),
            "rewards": dict(self.rewards),
            "compensations": dict(self.compensations),
            "reconciliation": dict(self.reconciliation),
        }


class RedeemObservabilityStore:
    """Collect redemption outcome telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._outcomes: Dict[str, int] = defaultdict(int)
        self._errors: Dict[str, int] = defaultdict(int)
        self._rewards: Dict[str, int] = defaultdict(int)
        self._compensations: Dict[str, int] = defaultdict(int)
        self._reconciliation: Dict[str, int] = defaultdict(int)

    def record_success(self, reward_type: str, *, duplicated: bool = False) -> None:
        with self._lock:
            self._outcomes["duplicated" if duplicated else "success"] += 1
            if not duplicated:
                self._rewards[reward_type or "unknown"] += 1

    def record_failure(self, error: str) -> None:
        with self._lock:
            self._outcomes["failed"] += 1
            self._errors[error or "unknown"] += 1

    def record_compensation(self, succeeded: bool) -> None:
        with self._lock:
            self._compensations["applied" if succeeded else "failed"] += 1

    def record_reconciliation(self, summary: Mapping[str, int]) -> None:
        with self._lock:
            self._reconciliation["runs"] += 1
            for key, value in summary.items():
                if isinstance(value, int):
                    self._reconciliation[key] += value

    def snapshot(self) -> RedeemSnapshot:
        with self._lock:
            return RedeemSnapshot(
                outcomes=dict(self._outcomes),
                errors=dict(self._errors),
                rewards=dict(self._rewards),
                compensations=dict(self._compensations),
                reconciliation=dict(self._reconciliation),
            )

    def reset(self) -> None:
        with self._lock:
            self._outcomes.clear()
            self._errors.clear()
            self._rewards.clear()
            self._compensations.clear()
            self._reconciliation.clear()


_STORE = RedeemObservabilityStore()


def get_redeem_store() -> RedeemObservabilityStore:
    return _STORE


__all__ = ["get_redeem_store", "RedeemObservabilityStore", "RedeemSnapshot"]
