"""
Error taxonomy shared by the relay, the executor and the issuer client.

Every failure that reaches an issuer is one of these. The executor turns
them into Result(success=False, error=str(exc)); the relay raises Timeout
and Unavailable itself.
"""


class TabRelayError(Exception):
    """Base class for all tabrelay failures."""


class ValidationError(TabRelayError):
    """Missing or invalid command field. Never retried."""


class RefNotFound(TabRelayError):
    """Ref id unknown to the current table, or its locator matches nothing live."""

    def __init__(self, ref, reason=None):
        self.ref = ref
        if reason is None:
            reason = f'Ref "{ref}" not found. Run snapshot first to get available refs.'
        super().__init__(reason)


class RestrictedPage(TabRelayError):
    """Operation attempted on a browser-internal page."""

    def __init__(self, url, what="operate on"):
        self.url = url
        super().__init__(f"Cannot {what} restricted page: {url}")


class Timeout(TabRelayError):
    """Relay deadline or element-wait deadline exceeded."""


class Unavailable(TabRelayError):
    """Transport or relay gone; needs outside intervention."""


class HandlerError(TabRelayError):
    """Any other failure inside an operation handler."""
