"""
The registry service: the single entry point the engine uses to log in,
search and open repositories.
"""
import logging
from typing import List, Optional
import urllib.parse

import requests
from requests.structures import CaseInsensitiveDict

from .auth import login
from .config import ServiceConfig, ServiceOptions
from .endpoint import APIEndpoint, Endpoint, new_endpoint, validate_endpoint
from .exceptions import RegistryException
from .names import split_hostname
from .repository import FallbackRepository, Repository
from .session import Session
from .transport import MetaHeaders, Transport
from .types import (
    AUTH_HEADER,
    DEFAULT_V2_REGISTRY,
    INDEX_NAME,
    INDEX_SERVER,
    APIVersion,
    AuthConfig,
    IndexInfo,
    RepositoryInfo,
    SearchResults,
    decode_auth_header,
)
from .v1 import V1Repository
from .v2 import V2Client, V2Repository

LOGGER = logging.getLogger(__name__)

OFFICIAL_V1_URL = "https://index.docker.io"


def auth_config_from_headers(headers: Optional[MetaHeaders]) -> Optional[AuthConfig]:
    """
    Returns the credentials carried in an X-Registry-Auth header, if any.
    """
    value = CaseInsensitiveDict(headers or {}).get(AUTH_HEADER)
    if not value:
        return None
    if not isinstance(value, str):
        value = value[0]
    return decode_auth_header(value)


class Service:
    """
    Registry operations for the engine. Holds the resolved configuration and
    the process-wide transport; everything else is created per call.
    """

    def __init__(
        self,
        options: Optional[ServiceOptions] = None,
        transport: Optional[Transport] = None,
    ) -> None:
        self.config = ServiceConfig(options)
        self.transport = transport or Transport()

    @staticmethod
    def _auth_config(
        auth_config: Optional[AuthConfig], headers: Optional[MetaHeaders]
    ) -> AuthConfig:
        if auth_config is not None:
            return auth_config
        return auth_config_from_headers(headers) or AuthConfig()

    def auth(self, auth_config: AuthConfig) -> str:
        """
        Log in to the registry named by auth_config.server_address (the
        official index if empty) and return its status message.
        """
        address = auth_config.server_address or INDEX_SERVER
        if "://" not in address:
            address = "https://" + address
        index = self.resolve_index(urllib.parse.urlparse(address).netloc)

        endpoint = new_endpoint(index, self.transport)
        auth_config = AuthConfig(
            username=auth_config.username,
            password=auth_config.password,
            email=auth_config.email,
            server_address=str(endpoint),
            identity_token=auth_config.identity_token,
        )
        return login(auth_config, endpoint, self.transport)

    def search(
        self,
        term: str,
        auth_config: Optional[AuthConfig] = None,
        headers: Optional[MetaHeaders] = None,
    ) -> SearchResults:
        """
        Search the index term resolves to. Search only exists in the legacy
        protocol.
        """
        auth_config = self._auth_config(auth_config, headers)
        repo_info = self.resolve_repository(term)

        endpoint = new_endpoint(repo_info.index, self.transport, APIVersion.V1)
        session = Session(self.transport, auth_config, endpoint, headers)
        return session.search_repositories(repo_info.search_term())

    def resolve_repository(self, name: str) -> RepositoryInfo:
        """
        Split a repository name into its components and the configuration of
        its index.
        """
        return self.config.new_repository_info(name)

    def resolve_index(self, name: str) -> IndexInfo:
        return self.config.new_index_info(name)

    def lookup_endpoints(self, repo_name: str) -> List[APIEndpoint]:
        """
        Returns the endpoints that may serve a fully qualified repository
        name, v2 first. Endpoints of other registries are pinged; an
        insecure registry that fails over HTTPS is retried over HTTP.
        """
        mirrors = tuple(self.config.mirrors)
        if repo_name.startswith(INDEX_NAME + "/"):
            return [
                APIEndpoint(DEFAULT_V2_REGISTRY, APIVersion.V2, True, True, mirrors),
                APIEndpoint(OFFICIAL_V1_URL, APIVersion.V1, True, True, mirrors),
            ]

        hostname, _ = split_hostname(repo_name)
        secure = self.config.is_secure_index(hostname)

        endpoints = []
        for version in (APIVersion.V2, APIVersion.V1):
            for scheme in ("https", "http"):
                if scheme == "http" and secure:
                    break
                candidate = APIEndpoint(
                    "{}://{}".format(scheme, hostname), version, secure=secure
                )
                try:
                    candidate.endpoint().ping(self.transport)
                except (RegistryException, requests.RequestException) as exc:
                    LOGGER.debug("Ping of %s failed: %s", candidate.url, exc)
                    continue
                endpoints.append(candidate)
                break
        return endpoints

    def _resolve_scheme(self, endpoint: Endpoint) -> Endpoint:
        """
        Point an insecure registry's endpoint at plain HTTP when it does not
        answer over HTTPS. Secure endpoints and registries that answer neither
        ping are left on HTTPS.
        """
        if endpoint.secure:
            return endpoint
        version = endpoint.version
        try:
            validate_endpoint(endpoint, self.transport)
        except (RegistryException, requests.RequestException) as exc:
            LOGGER.debug("Ping of insecure registry %s failed: %s", endpoint.host, exc)
            endpoint.url = "https://" + endpoint.host
        endpoint.version = version
        return endpoint

    def new_repository(
        self,
        name: str,
        action: str = "pull",
        meta_headers: Optional[MetaHeaders] = None,
        auth_config: Optional[AuthConfig] = None,
    ) -> Repository:
        """
        Returns a repository that tries the distribution protocol first and,
        when the index has legacy mirrors configured, the v1 protocol after it.
        """
        auth_config = self._auth_config(auth_config, meta_headers)
        repo_info = self.resolve_repository(name)
        index = repo_info.index
        remote_name = repo_info.remote_name

        if index.official:
            v2_url = DEFAULT_V2_REGISTRY
        else:
            v2_url = self._resolve_scheme(
                Endpoint(index.name, secure=index.secure, version=APIVersion.V2)
            ).url
        client = V2Client(
            self.transport,
            remote_name,
            v2_url,
            action=action,
            auth_config=auth_config,
            meta_headers=meta_headers,
            mirrors=index.mirrors,
            secure=index.secure,
        )
        repositories: List[Repository] = [
            V2Repository(remote_name, client, action, meta_headers, auth_config)
        ]

        if index.mirrors:
            endpoint = self._resolve_scheme(
                Endpoint(
                    index.auth_config_key(), secure=index.secure, version=APIVersion.V1
                )
            )
            session = Session(self.transport, auth_config, endpoint, meta_headers)
            repositories.append(
                V1Repository(
                    remote_name,
                    session,
                    action,
                    meta_headers,
                    auth_config,
                    mirrors=index.mirrors,
                )
            )

        LOGGER.debug(
            "Repository %s served by %s",
            repo_info.canonical_name,
            ", ".join(type(repo).__name__ for repo in repositories),
        )
        return FallbackRepository(repositories)
