"""Ledger collaborators credited by redemptions."""

from .currency import CurrencyCredit, CurrencyLedgerError, HttpCurrencyLedger  # noqa: F401
from .points import PointsCredit, SqlPointsLedger  # noqa: F401
