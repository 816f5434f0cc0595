class FulfillmentException(Exception):
    """Base exception for all fulfillment errors."""

    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class UpstreamException(FulfillmentException):
    """Error from an external collaborator (store, provider, notifier)."""

    status_code = 502
    error_code = "upstream_error"

    def __init__(
        self,
        message: str,
        service: str,
        upstream_code: str | None = None,
        upstream_message: str | None = None,
    ):
        self.service = service
        self.upstream_code = upstream_code
        self.upstream_message = upstream_message
        super().__init__(message)


class ProviderException(UpstreamException):
    """Error from the provisioning provider."""

    error_code = "provider_error"


class StoreException(UpstreamException):
    """Error reading or writing the order record store."""

    error_code = "store_error"


class NotifierException(UpstreamException):
    """Error from the email channel."""

    error_code = "notifier_error"


class ESimNotFoundException(ProviderException):
    """eSIM not found at the provider."""

    status_code = 404
    error_code = "esim_not_found"


class ConfigurationException(FulfillmentException):
    """Required configuration is missing or invalid."""

    status_code = 500
    error_code = "configuration_error"


class SignatureException(FulfillmentException):
    """Inbound webhook signature did not verify."""

    status_code = 401
    error_code = "invalid_signature"
