"""Error taxonomy for the multiplexer.

Only caller misuse raises out of the public API. The classes below are caught
and handled inside the subsystem:

    TransportError          - recovered by the supervisor's reconnect loop
    MalformedMessageError   - message dropped and counted
    SubscriberCallbackError - logged by the dispatcher, delivery continues
    ExhaustedReconnectError - handed to the host's on_exhausted callback
"""

from __future__ import annotations


class MultiplexerError(Exception):
    """Base class for multiplexer errors."""


class TransportError(MultiplexerError):
    """Connection-level failure (DNS, TLS, handshake, abrupt close)."""


class MalformedMessageError(MultiplexerError):
    """A single inbound message could not be decoded or normalized."""

    def __init__(self, reason: str, stream: str | None = None) -> None:
        self.reason = reason
        self.stream = stream
        where = f" on {stream}" if stream else ""
        super().__init__(f"malformed message{where}: {reason}")


class SubscriberCallbackError(MultiplexerError):
    """Wraps an exception raised by a subscriber's callback."""

    def __init__(self, subscription_id: str, cause: BaseException) -> None:
        self.subscription_id = subscription_id
        self.cause = cause
        super().__init__(f"callback for subscription {subscription_id} failed: {cause!r}")


class ExhaustedReconnectError(MultiplexerError):
    """Reconnection gave up after max_attempts consecutive failures."""

    def __init__(self, attempts: int, last_error: BaseException | None = None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"gave up reconnecting after {attempts} attempts (last error: {last_error!r})")
