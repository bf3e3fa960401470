class BurnforgeError(Exception):
    """Base of every failure the pipeline reports to a caller."""

    code = 'error'
    http_status = 500
    retryable = False

    def __init__(self, message, *, details=None, retryable=None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if retryable is not None:
            self.retryable = retryable

    def to_dict(self):
        body = {'error': self.message, 'code': self.code, 'retryable': self.retryable}
        body.update(self.details)
        return body


class InvalidInput(BurnforgeError):
    code = 'invalid_input'
    http_status = 400


class NotFound(BurnforgeError):
    code = 'not_found'
    http_status = 404


class AlreadyRedeemed(BurnforgeError):
    code = 'already_redeemed'
    http_status = 409


class ChainVerificationFailed(BurnforgeError):
    code = 'chain_verification_failed'
    http_status = 400

    def __init__(self, message, *, tx_id=None, details=None, retryable=None):
        details = dict(details or {})
        if tx_id:
            details.setdefault('txHash', tx_id)
        super().__init__(message, details=details, retryable=retryable)
        self.tx_id = tx_id
        # Not-yet-final receipts are an upstream condition, not a bad request
        if self.retryable:
            self.http_status = 502


class InvalidBurn(ChainVerificationFailed):
    code = 'invalid_burn'


class InvalidTransfer(ChainVerificationFailed):
    code = 'invalid_transfer'


class InvalidPayment(ChainVerificationFailed):
    code = 'invalid_payment'


class UpstreamServiceFailed(BurnforgeError):
    code = 'upstream_failed'
    http_status = 502
    retryable = True

    def __init__(self, service, message, *, details=None):
        details = dict(details or {})
        details.setdefault('service', service)
        super().__init__(message, details=details)
        self.service = service


class GenerationFailed(UpstreamServiceFailed):
    code = 'generation_failed'

    def __init__(self, message, *, details=None):
        super().__init__('image_generation', message, details=details)


class ConfigurationMissing(BurnforgeError):
    code = 'configuration_missing'
    http_status = 500

    def __init__(self, setting, message=None):
        super().__init__(message or f'{setting} is not configured', details={'setting': setting})
        self.setting = setting


class AccessDenied(BurnforgeError):
    code = 'access_denied'
    http_status = 403


class RateLimited(BurnforgeError):
    code = 'rate_limited'
    http_status = 429
    retryable = True


class NameUnavailable(BurnforgeError):
    code = 'name_unavailable'
    http_status = 409
