class BillingError(Exception):
    """Root of the billing engine's error taxonomy."""

    status_code = 500
    error_code = "billing_error"
    retryable = False

    def __init__(self, message=None, **context):
        super().__init__(message or self.error_code)
        self.message = message or self.error_code
        self.context = context

    def to_dict(self):
        return {"error": self.error_code, "message": self.message}


class ValidationError(BillingError):
    status_code = 422
    error_code = "validation_error"

    def __init__(self, message=None, field=None, **context):
        super().__init__(message, field=field, **context)
        self.field = field


class ConflictError(BillingError):
    status_code = 409
    error_code = "conflict"


class NotFoundError(BillingError):
    status_code = 404
    error_code = "not_found"


class LimitExceededError(BillingError):
    status_code = 429
    error_code = "limit_exceeded"

    def __init__(self, limit, dimension, plan, used=None, upgrade_to=None):
        message = (
            f"Plan '{plan}' allows {limit} {dimension.replace('_', ' ')} per billing period"
        )
        super().__init__(message, limit=limit, dimension=dimension, plan=plan)
        self.limit = limit
        self.dimension = dimension
        self.plan = plan
        self.used = used
        self.upgrade_to = upgrade_to

    def to_dict(self):
        body = super().to_dict()
        body.update({
            "limit": self.limit,
            "dimension": self.dimension,
            "plan": self.plan,
            "upgrade_to": self.upgrade_to,
        })
        return body


class TransientStoreError(BillingError):
    status_code = 503
    error_code = "store_unavailable"
    retryable = True


class ProviderUnavailableError(BillingError):
    status_code = 503
    error_code = "provider_unavailable"
    retryable = True
