"""Custom exceptions for the Storefront API."""


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    status_code = 500

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


class BadRequestError(StorefrontError):
    """Bad input or a broken business rule (stock, coupons, referral codes)."""

    status_code = 400


class UnauthorizedError(StorefrontError):
    status_code = 401


class ForbiddenError(StorefrontError):
    status_code = 403


class NotFoundError(StorefrontError):
    status_code = 404


class UploadError(StorefrontError):
    """Raised when object storage is misconfigured or rejects an upload."""

    status_code = 500


class EmailDeliveryError(StorefrontError):
    """Raised when the e-mail provider fails to accept a message."""

    status_code = 502
