"""
Error taxonomy for the Tally dashboard client.

Every error carries a human-readable message plus the plausible causes and
suggested remedies, because operational problems on the Tally side (slow
exports, a mistyped company name, an unreachable gateway) are far more common
than code defects.
"""
from __future__ import annotations
from typing import Optional, Sequence


class TallyError(Exception):
    """Base class for all dashboard client errors."""

    default_causes: tuple[str, ...] = ()
    default_remedies: tuple[str, ...] = ()

    def __init__(
        self,
        message: str,
        causes: Optional[Sequence[str]] = None,
        remedies: Optional[Sequence[str]] = None,
    ):
        self.message = message
        self.causes = list(causes if causes is not None else self.default_causes)
        self.remedies = list(remedies if remedies is not None else self.default_remedies)
        super().__init__(message)

    def describe(self) -> str:
        """Full actionable description: what failed, why it may have, what to do."""
        lines = [self.message]
        if self.causes:
            lines.append("Possible causes:")
            lines.extend(f"  {i}. {c}" for i, c in enumerate(self.causes, 1))
        if self.remedies:
            lines.append("Suggested fixes:")
            lines.extend(f"  {i}. {r}" for i, r in enumerate(self.remedies, 1))
        return "\n".join(lines)

    def __str__(self) -> str:
        return self.describe()


class ValidationError(TallyError):
    """Raised for malformed caller input, before any network call is made."""

    default_remedies = ("Check the values passed to the request and try again",)


class TransportError(TallyError):
    """Raised by the transport when a request to Tally could not complete."""
    pass


class NetworkUnreachable(TransportError):
    """Raised when the Tally server cannot be reached at all."""

    default_causes = (
        "Tally is not running or its HTTP server is disabled",
        "The server address or port is wrong",
        "A firewall or proxy is blocking the connection",
        "The gateway does not allow cross-origin requests",
    )
    default_remedies = (
        "Enable 'TallyPrime Server' / ODBC port in Tally (F1 > Settings > Connectivity)",
        "Verify the configured address and port",
        "Run the dashboard from the same network as Tally or through the dev proxy",
    )


class RequestTimeout(TransportError, TimeoutError):
    """Raised when Tally does not answer within the configured timeout."""

    default_causes = (
        "Tally is busy with a large export or another user session",
        "Network latency between the dashboard and Tally",
        "The server is overloaded",
    )
    default_remedies = (
        "Narrow the date range or reduce the page size",
        "Increase TALLY_REQUEST_TIMEOUT",
        "Retry once Tally is idle",
    )


class UpstreamHttpError(TransportError):
    """Raised when Tally (or a proxy in front of it) answers with a non-2xx status."""

    default_causes = (
        "A proxy in front of Tally rejected the request",
        "The Tally gateway is misconfigured",
    )
    default_remedies = ("Check the proxy / gateway logs for the status code",)

    def __init__(self, message: str, status_code: int, **kwargs):
        self.status_code = status_code
        super().__init__(message, **kwargs)


class UpstreamApplicationError(TransportError):
    """
    Raised when Tally answers 200 but the body reports a failure.

    ``identifier`` holds the offending value named in the body (usually the
    company name Tally could not load), or None when the body names none.
    """

    default_causes = (
        "The company name does not match a company open in Tally",
        "The company is not loaded in the running Tally instance",
    )
    default_remedies = (
        "Open the company in Tally before querying it",
        "Select the company again from the company list (names include the FY suffix)",
    )

    def __init__(self, message: str, identifier: Optional[str] = None, **kwargs):
        self.identifier = identifier
        super().__init__(message, **kwargs)


class ParseError(TallyError):
    """Raised only when a response body is not XML at all."""

    default_causes = (
        "A proxy returned an HTML error page instead of Tally's XML",
        "The response was truncated",
    )
    default_remedies = ("Fetch the raw response with `python -m tally_dashboard raw` and inspect it",)
