"""
Registry endpoints: URL handling, API version detection and pings.
"""
import logging
import re
from typing import NamedTuple, Optional, Tuple
import urllib.parse

import requests

from .exceptions import HTTPRequestError, RegistryException
from .transport import Transport
from .types import INDEX_SERVER, APIVersion, IndexInfo, PingResult

LOGGER = logging.getLogger(__name__)

_VERSION_SUFFIX = re.compile(r"/v([12])/?$")

DISTRIBUTION_VERSION_HEADER = "Docker-Distribution-API-Version"


def scan_for_api_version(address: str) -> Tuple[str, APIVersion]:
    """
    Strip a trailing /v1/ or /v2/ from address and report the version it named.
    """
    match = _VERSION_SUFFIX.search(address)
    if match is None:
        return address.rstrip("/"), APIVersion.UNKNOWN
    return address[: match.start()], APIVersion(int(match.group(1)))


class Endpoint:
    """
    One registry HTTP origin together with the API version it speaks.
    """

    def __init__(
        self,
        address: str,
        secure: bool = True,
        version: APIVersion = APIVersion.UNKNOWN,
    ) -> None:
        trimmed, found_version = scan_for_api_version(address)
        if "://" not in trimmed:
            trimmed = "https://" + trimmed
        self.url = trimmed
        self.version = version or found_version
        self.secure = secure

    def __str__(self) -> str:
        return self.version_string(self.version or APIVersion.V1)

    def __repr__(self) -> str:
        return "Endpoint({!r}, version={})".format(self.url, self.version)

    @property
    def host(self) -> str:
        return urllib.parse.urlparse(self.url).netloc

    def version_string(self, version: APIVersion) -> str:
        """
        Returns the base URL for an API version, e.g. https://host/v1/.
        """
        return "{}/v{}/".format(self.url, int(version))

    def path(self, path: str) -> str:
        """
        Returns the URL of path under this endpoint's API version.
        """
        return self.version_string(self.version or APIVersion.V1) + path

    def ping(self, transport: Transport) -> PingResult:
        """
        Ask the registry what it is. If the version is unknown, v2 is tried
        first and the endpoint adopts whichever version answers.
        """
        if self.version == APIVersion.V1:
            return self._ping_v1(transport)
        if self.version == APIVersion.V2:
            return self._ping_v2(transport)

        try:
            self.version = APIVersion.V2
            return self._ping_v2(transport)
        except (requests.RequestException, RegistryException) as exc:
            LOGGER.debug("v2 ping of %s failed, trying v1: %s", self.url, exc)
        self.version = APIVersion.V1
        try:
            return self._ping_v1(transport)
        except (requests.RequestException, RegistryException):
            self.version = APIVersion.UNKNOWN
            raise

    def _ping_v1(self, transport: Transport) -> PingResult:
        if str(self) == INDEX_SERVER:
            # The official index is never standalone.
            return PingResult(standalone=False, api_version=APIVersion.V1)

        session = transport.new_session(secure=self.secure)
        resp = session.get(self.path("_ping"))
        if resp.status_code != 200:
            raise HTTPRequestError(
                "HTTP code {} while pinging {}".format(resp.status_code, self), resp
            )

        standalone = resp.headers.get("X-Docker-Registry-Standalone")
        LOGGER.debug("Registry standalone header: %r", standalone)
        return PingResult(
            version=resp.headers.get("X-Docker-Registry-Version", ""),
            standalone=standalone is None or standalone.lower() in ("true", "1"),
            api_version=APIVersion.V1,
        )

    def _ping_v2(self, transport: Transport) -> PingResult:
        session = transport.new_session(secure=self.secure)
        resp = session.get(self.path(""))
        versions = resp.headers.get(DISTRIBUTION_VERSION_HEADER, "").split()
        if resp.status_code not in (200, 401) or "registry/2.0" not in versions:
            raise RegistryException(
                "{} does not appear to be a v2 registry endpoint".format(self.url)
            )
        return PingResult(version="2.0", standalone=True, api_version=APIVersion.V2)


def validate_endpoint(endpoint: Endpoint, transport: Transport) -> PingResult:
    """
    Ping endpoint, retrying over plain HTTP if the registry is insecure.
    """
    LOGGER.debug("Pinging registry endpoint %s", endpoint.url)
    try:
        return endpoint.ping(transport)
    except (requests.RequestException, RegistryException) as exc:
        if endpoint.secure:
            raise RegistryException(
                "invalid registry endpoint {}: {}. If this private registry "
                "supports only HTTP or HTTPS with an unknown CA certificate, "
                "add it to the insecure registries".format(endpoint, exc)
            )
        LOGGER.debug("HTTPS ping of %s failed: %s", endpoint.url, exc)

    endpoint.url = "http://" + endpoint.host
    return endpoint.ping(transport)


def new_endpoint(
    index: IndexInfo, transport: Transport, version: APIVersion = APIVersion.UNKNOWN
) -> Endpoint:
    """
    Build and validate the endpoint used to talk to an index.
    """
    endpoint = Endpoint(index.auth_config_key(), secure=index.secure, version=version)
    validate_endpoint(endpoint, transport)
    return endpoint


class APIEndpoint(NamedTuple):
    """
    A candidate registry endpoint for a repository operation.
    """

    url: str
    version: APIVersion
    official: bool = False
    secure: bool = True
    mirrors: Tuple[str, ...] = ()

    def endpoint(self, version: Optional[APIVersion] = None) -> Endpoint:
        return Endpoint(self.url, secure=self.secure, version=version or self.version)
