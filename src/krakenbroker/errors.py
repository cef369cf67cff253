"""Brokerage error taxonomy.

Adapters translate exchange-library exceptions into these so callers only
ever handle one hierarchy.
"""

from __future__ import annotations


class BrokerageError(Exception):
    """Base class for every error raised by the connector."""


class ConfigMissing(BrokerageError):
    """Credentials required for a private call are absent."""


class RejectedOrder(BrokerageError):
    def __init__(self, reason: str, broker_id: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.broker_id = broker_id


class NotSupported(BrokerageError):
    """Operation is not valid for this order kind. Raised before any network call."""


class OrderTimeout(BrokerageError):
    """No acknowledgment or terminal state within the bound.

    The outcome is unknown: the order may still fill or cancel later and
    must be reconciled by the caller.
    """

    def __init__(self, message: str, broker_id: str | None = None, last_status: str | None = None) -> None:
        super().__init__(message)
        self.broker_id = broker_id
        self.last_status = last_status


class RateLimited(BrokerageError):
    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class AuthenticationFailed(BrokerageError):
    """Supplied credentials were rejected; the session is aborted."""


class OrderNotFound(BrokerageError):
    pass


class ExchangeUnavailable(BrokerageError):
    pass


class MarketDataUnavailable(BrokerageError):
    pass
