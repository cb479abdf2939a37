"""Errores de dominio con su código HTTP asociado.

Los módulos de servicio lanzan estas excepciones; main.py las convierte en la
respuesta estándar ``{"success": false, "message": ..., "errors": ...}``.
"""
from typing import Optional


class ServiceError(Exception):
    status_code = 500
    default_message = "An error occurred"

    def __init__(self, message: Optional[str] = None, errors: Optional[dict] = None):
        self.message = message or self.default_message
        self.errors = errors
        super().__init__(self.message)


class BadRequest(ServiceError):
    status_code = 400
    default_message = "Bad request"


class Unauthorized(ServiceError):
    status_code = 401
    default_message = "Unauthorized access"


class Forbidden(ServiceError):
    status_code = 403
    default_message = "Access forbidden"


class NotFound(ServiceError):
    status_code = 404
    default_message = "Resource not found"


class Conflict(ServiceError):
    status_code = 409
    default_message = "Conflict"


class ValidationError(ServiceError):
    status_code = 422
    default_message = "Validation failed"


class InternalError(ServiceError):
    status_code = 500
    default_message = "Internal server error"


class PromoRejected(BadRequest):
    default_message = "Invalid promo code"
