"""
Payment Bridge Exceptions

Every expected failure is raised as one of these and translated to an HTTP
status at the API boundary. Only TransportError asks the sender to retry.
"""


class BridgeError(Exception):
    """Base exception for payment bridge errors"""
    status_code = 500


class ValidationError(BridgeError):
    """Raised when an inbound payload is malformed or missing fields"""
    status_code = 400


class AuthenticityError(BridgeError):
    """Raised when a webhook signature does not match its body"""
    status_code = 401


class NotFoundError(BridgeError):
    """Raised when an order or correlation ref is unknown"""
    status_code = 404


class UpstreamRejected(BridgeError):
    """Raised when the gateway or storefront explicitly declines a request"""
    status_code = 200


class TransportError(BridgeError):
    """Raised on network errors, timeouts or unexpected upstream responses"""
    status_code = 500


class DuplicateOrderError(BridgeError):
    """Raised when an order already has a correlation ref"""
    status_code = 200
