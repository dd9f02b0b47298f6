from enum import Enum

from rest_framework.views import exception_handler
from rest_framework.response import Response
from rest_framework import status
import logging

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    BAD_REQUEST = "BAD_REQUEST"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"

    # Catalog / inventory
    PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"
    PRODUCT_INACTIVE = "PRODUCT_INACTIVE"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    INVALID_QUANTITY = "INVALID_QUANTITY"

    # Orders
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    ORDER_STATUS_ERROR = "ORDER_STATUS_ERROR"
    ORDER_INVALID_TRANSITION = "ORDER_INVALID_TRANSITION"
    CART_EMPTY = "CART_EMPTY"
    INVALID_PAGINATION = "INVALID_PAGINATION"


ERROR_HTTP_STATUS = {
    ErrorCode.BAD_REQUEST: status.HTTP_400_BAD_REQUEST,
    ErrorCode.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCode.INTERNAL_SERVER_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.PRODUCT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.PRODUCT_INACTIVE: status.HTTP_400_BAD_REQUEST,
    ErrorCode.INSUFFICIENT_STOCK: status.HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_QUANTITY: status.HTTP_400_BAD_REQUEST,
    ErrorCode.ORDER_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.ORDER_STATUS_ERROR: status.HTTP_400_BAD_REQUEST,
    ErrorCode.ORDER_INVALID_TRANSITION: status.HTTP_400_BAD_REQUEST,
    ErrorCode.CART_EMPTY: status.HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_PAGINATION: status.HTTP_400_BAD_REQUEST,
}


class BusinessLogicException(Exception):
    """
    Raised when a domain rule is violated (e.g. 'Stock not available').

    Subclasses group the codes by how a caller should react to them:
    validation and conflict failures can be retried after the client
    corrects its request, state failures cannot.
    """
    default_code = ErrorCode.BAD_REQUEST

    def __init__(self, message, code=None):
        self.message = message
        self.code = ErrorCode(code) if code is not None else self.default_code
        super().__init__(message)

    @property
    def http_status(self):
        return ERROR_HTTP_STATUS.get(self.code, status.HTTP_400_BAD_REQUEST)

    def __repr__(self):
        return f"{type(self).__name__}({self.code.value}: {self.message})"


class ValidationException(BusinessLogicException):
    default_code = ErrorCode.BAD_REQUEST


class ConflictException(BusinessLogicException):
    default_code = ErrorCode.CONFLICT


class StateException(BusinessLogicException):
    default_code = ErrorCode.ORDER_STATUS_ERROR


class NotFoundException(BusinessLogicException):
    default_code = ErrorCode.NOT_FOUND


class PermissionException(BusinessLogicException):
    default_code = ErrorCode.FORBIDDEN


class InternalException(BusinessLogicException):
    """
    Store-level anomaly or bug. Always logged by the raiser before propagating.
    """
    default_code = ErrorCode.INTERNAL_SERVER_ERROR


def custom_exception_handler(exc, context):
    # Call REST framework's default exception handler first
    response = exception_handler(exc, context)

    if isinstance(exc, InternalException):
        logger.error(f"Internal Error: {exc!r}", exc_info=exc)
        return Response(
            {"error": "Internal Server Error", "code": exc.code.value},
            status=exc.http_status
        )

    if isinstance(exc, BusinessLogicException):
        logger.warning(f"Business Error: code={exc.code.value} message={exc.message}")
        return Response(
            {"error": exc.message, "code": exc.code.value},
            status=exc.http_status
        )

    # If response is None, it's an unhandled server error (500)
    if response is None:
        logger.error(f"Unhandled Exception: {exc}", exc_info=True)
        return Response(
            {"error": "Internal Server Error", "code": ErrorCode.INTERNAL_SERVER_ERROR.value},
            status=status.HTTP_500_INTERNAL_SERVER_ERROR
        )

    return response
