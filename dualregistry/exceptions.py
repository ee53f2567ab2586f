"""
Exception hierarchy for registry access along with the helpers used to decide
whether an error should make the caller try the next endpoint or protocol.
"""
import logging
from typing import Any, Dict, List, Mapping, Optional

import requests

LOGGER = logging.getLogger(__name__)

# Distribution API error codes.
# See https://docs.docker.com/registry/spec/api/#errors-2
ERROR_CODE_UNKNOWN = "UNKNOWN"
ERROR_CODE_UNAUTHORIZED = "UNAUTHORIZED"
ERROR_CODE_DENIED = "DENIED"
ERROR_CODE_UNSUPPORTED = "UNSUPPORTED"
ERROR_CODE_NAME_UNKNOWN = "NAME_UNKNOWN"
ERROR_CODE_MANIFEST_UNKNOWN = "MANIFEST_UNKNOWN"
ERROR_CODE_MANIFEST_INVALID = "MANIFEST_INVALID"
ERROR_CODE_BLOB_UNKNOWN = "BLOB_UNKNOWN"
ERROR_CODE_DIGEST_INVALID = "DIGEST_INVALID"

FALLBACK_ERROR_CODES = (ERROR_CODE_UNAUTHORIZED, ERROR_CODE_MANIFEST_UNKNOWN)


class RegistryException(Exception):
    """
    Base class for all errors raised by this library.
    """


class InvalidNameError(RegistryException, ValueError):
    """
    Raised when a repository or index name cannot be parsed.
    """


class NotFoundError(RegistryException):
    """
    Raised when a repository, tag, image or index entry does not exist.
    """


class UnauthorizedError(RegistryException):
    """
    Raised when the registry rejected our credentials or token.
    """


class AlreadyExistsError(RegistryException):
    """
    Raised when pushing a legacy image that the registry already has.
    """


class ManifestInvalidError(RegistryException):
    """
    Raised for structurally malformed manifests.
    """


class CorruptedBlobError(RegistryException):
    """
    Raised when a fully read blob does not match its expected digest.
    """


class NoSupportError(RegistryException):
    """
    Signals that an operation is not implemented for a protocol version.
    """

    def __init__(self, err: Exception) -> None:
        super().__init__("not supported: {}".format(err))
        self.err = err


class HTTPRequestError(RegistryException):
    """
    Raised when a registry answers with an unexpected HTTP status.
    """

    def __init__(self, message: str, response: requests.Response) -> None:
        super().__init__(message)
        self.response = response
        self.status_code = response.status_code


class EndpointErrors(RegistryException):
    """
    Every endpoint tried failed. Maps each endpoint to its error.
    """

    def __init__(self, errors: Mapping[str, Exception]) -> None:
        if errors:
            message = "all endpoints failed: " + ", ".join(
                "{}: {}".format(ep, err) for ep, err in errors.items()
            )
        else:
            message = "no endpoints to try"
        super().__init__(message)
        self.errors = dict(errors)


class V2Error(RegistryException):
    """
    A single error decoded from a distribution API error body.
    """

    def __init__(
        self, code: str, message: str = "", detail: Any = None, status_code: int = 0
    ) -> None:
        super().__init__("{}: {}".format(code.lower(), message or code))
        self.code = code
        self.message = message
        self.detail = detail
        self.status_code = status_code

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], status_code: int = 0) -> "V2Error":
        """
        Build an error from one entry of the "errors" list.
        """
        return cls(
            data.get("code", ERROR_CODE_UNKNOWN),
            data.get("message", ""),
            data.get("detail"),
            status_code=status_code,
        )


class V2Errors(RegistryException):
    """
    The full list of errors a distribution API response carried.
    """

    def __init__(self, errors: List[V2Error]) -> None:
        super().__init__("; ".join(str(err) for err in errors))
        self.errors = errors


class RegistryError(RegistryException):
    """
    An error annotated with whether the caller should fall back.
    """

    def __init__(self, message: str, err: Exception, fallback: bool = False) -> None:
        super().__init__("{}: {}".format(message, err))
        self.message = message
        self.err = err
        self.fallback = fallback


def should_v2_fallback(err: V2Error) -> bool:
    """
    Returns true if the v2 error code means another endpoint or protocol
    version could still serve the request.
    """
    LOGGER.debug("v2 error: %s %s", type(err).__name__, err)
    return err.code in FALLBACK_ERROR_CODES


def continue_on_error(err: Exception) -> bool:
    """
    Classify err as "try the next endpoint/protocol" (True) or terminal.
    """
    if isinstance(err, V2Errors):
        return bool(err.errors) and should_v2_fallback(err.errors[0])
    if isinstance(err, V2Error):
        return should_v2_fallback(err)
    if isinstance(err, RegistryError):
        return err.fallback
    if isinstance(err, UnauthorizedError):
        return True
    if isinstance(err, (requests.ConnectionError, requests.Timeout)):
        return True
    return False


def wrap_error(message: str, err: Exception) -> RegistryError:
    """
    Wrap err with a message, recording whether it warrants fallback.
    """
    LOGGER.debug("registry error: %s %s", type(err).__name__, err)
    return RegistryError(message, err, fallback=continue_on_error(err))


def translate_v2_auth_error(err: Exception) -> Exception:
    """
    Convert a distribution UNAUTHORIZED error into an UnauthorizedError.
    Other errors are returned untouched.
    """
    codes: List[str] = []
    if isinstance(err, V2Errors):
        codes = [e.code for e in err.errors]
    elif isinstance(err, V2Error):
        codes = [err.code]
    if ERROR_CODE_UNAUTHORIZED in codes:
        unauthorized = UnauthorizedError(str(err))
        unauthorized.__cause__ = err
        return unauthorized
    return err


def decode_v2_errors(response: requests.Response) -> Optional[V2Errors]:
    """
    Decode the distribution error body of a failed response, if it has one.
    """
    try:
        body: Dict[str, Any] = response.json()
    except ValueError:
        body = {}
    entries = body.get("errors") if isinstance(body, dict) else None
    if entries:
        return V2Errors(
            [V2Error.from_dict(entry, response.status_code) for entry in entries]
        )
    if response.status_code == 401:
        return V2Errors(
            [V2Error(ERROR_CODE_UNAUTHORIZED, "authentication required", None, 401)]
        )
    return None
