"""
Error taxonomy shared by the model layer and the HTTP server.

Model functions raise these; the server turns every ShopError into the
uniform ``{"success": false, "message": ...}`` result.
"""
from __future__ import annotations
from typing import Any, Dict, Optional


class ShopError(Exception):
    status_code = 400
    retryable = False

    def __init__(self, message: str, *, data: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.data = data


class ValidationError(ShopError):
    """Bad input shape. ``data["fields"]`` maps field name -> message."""
    status_code = 422

    def __init__(self, message: str, *, fields: Optional[Dict[str, str]] = None):
        super().__init__(message, data={"fields": fields or {}})
        self.fields = fields or {}


class Unauthorized(ShopError):
    status_code = 401


class NotFound(ShopError):
    status_code = 404


class InvalidState(ShopError):
    status_code = 409


class InsufficientStock(ShopError):
    status_code = 409

    def __init__(self, product_id: str, requested: int, available: int):
        super().__init__(
            f"insufficient stock: requested {requested}, "
            f"available {available}",
            data={"product_id": product_id, "requested": requested,
                  "available": available},
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


# ----------------------------
# Gateway errors
# ----------------------------
class GatewayError(ShopError):
    status_code = 502
    kind = "gateway"


class GatewayTransportError(GatewayError):
    # network / timeout: the operator may simply retry
    kind = "transport"
    retryable = True


class GatewayMalformedResponse(GatewayError):
    kind = "malformed"


class GatewayRejected(GatewayError):
    kind = "rejected"

    def __init__(self, message: str, *, code: Any = None):
        super().__init__(message, data={"code": code})
        self.code = code


class GatewayChallenge(GatewayError):
    # bot check in front of the API; passes after manual verification
    kind = "challenge"
    retryable = True
