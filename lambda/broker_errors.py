from __future__ import annotations


class BrokerError(Exception):
    """Base for every fail-closed outcome of the broker.

    `status_code` and `error_code` are what the HTTP handlers put on the wire.
    """

    status_code = 500
    error_code = "INTERNAL"
    outcome = "error"


class ConfigurationError(BrokerError):
    status_code = 500
    error_code = "MISCONFIGURED"
    outcome = "error"


class InvalidToken(BrokerError):
    status_code = 401
    error_code = "INVALID_TOKEN"
    outcome = "invalid_token"


class AmbiguousOrMissingGroup(BrokerError):
    status_code = 403
    error_code = "AMBIGUOUS_OR_MISSING_GROUP"
    outcome = "ambiguous_or_missing_group"


class InvalidCredential(BrokerError):
    status_code = 401
    error_code = "INVALID_CREDENTIAL"
    outcome = "invalid_credential"


class CredentialExpired(InvalidCredential):
    error_code = "CREDENTIAL_EXPIRED"
    outcome = "credential_expired"


class AuthorizationDenied(BrokerError):
    status_code = 403
    error_code = "AUTHORIZATION_DENIED"
    outcome = "denied"


class UpstreamAssignmentFailure(BrokerError):
    # Never returned to the confirmation caller; reported to operators only.
    error_code = "UPSTREAM_ASSIGNMENT_FAILURE"
    outcome = "upstream_assignment_failure"


def error_body(exc: BrokerError, *, request_id: str, message: str = "") -> dict[str, str]:
    return {
        "errorCode": exc.error_code,
        "message": message or str(exc) or exc.error_code,
        "requestId": request_id,
    }
