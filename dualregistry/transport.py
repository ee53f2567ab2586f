"""
HTTP plumbing shared by every registry session: TLS defaults, the connection
adapter, default request headers and the redirect header policy.
"""
import logging
import platform
import re
import ssl
from typing import List, Mapping, Optional, Sequence, Tuple, Union
import urllib.parse

import requests
from requests.adapters import HTTPAdapter
from requests.structures import CaseInsensitiveDict

from .version import __version__

LOGGER = logging.getLogger(__name__)

DIAL_TIMEOUT = 30
TLS_HANDSHAKE_TIMEOUT = 10

TRUSTED_HOSTS = ("docker.com", "docker.io")

META_HEADER_PREFIX = "x-meta-"

# Headers requests recomputes for each redirect hop; the policy below must not
# restore the original request's values for them.
REBUILT_HEADERS = ("Cookie", "Content-Length", "Content-Type", "Transfer-Encoding")

DEFAULT_CIPHERS = (
    "ECDHE-RSA-AES128-GCM-SHA256",
    "ECDHE-ECDSA-AES128-GCM-SHA256",
    "ECDHE-RSA-AES256-GCM-SHA384",
    "ECDHE-ECDSA-AES256-GCM-SHA384",
    "ECDHE-RSA-AES128-SHA",
    "ECDHE-RSA-AES256-SHA",
    "ECDHE-ECDSA-AES128-SHA",
    "ECDHE-ECDSA-AES256-SHA",
)

_ARCH_NAMES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
    "armv7l": "arm",
}

MetaHeaders = Mapping[str, Union[str, Sequence[str]]]


def _valid_ua_part(value: str) -> bool:
    return bool(value) and not re.search(r"[\s/]", value)


def build_user_agent(
    version: str = __version__,
    git_commit: str = "",
    kernel: Optional[str] = None,
    os_name: Optional[str] = None,
    arch: Optional[str] = None,
) -> str:
    """
    Build the User-Agent string sent with every request.

    Components always appear in the order docker, python, git-commit, kernel,
    os, arch. Empty or malformed components are left out. Host facts that are
    not passed in are read from the platform module.
    """
    if kernel is None:
        kernel = platform.release()
    if os_name is None:
        os_name = platform.system().lower()
    if arch is None:
        machine = platform.machine().lower()
        arch = _ARCH_NAMES.get(machine, machine)

    versions: Tuple[Tuple[str, str], ...] = (
        ("docker", version),
        ("python", platform.python_version()),
        ("git-commit", git_commit),
        ("kernel", kernel),
        ("os", os_name),
        ("arch", arch),
    )
    return " ".join(
        "{}/{}".format(name, value)
        for name, value in versions
        if _valid_ua_part(name) and _valid_ua_part(value)
    )


class HandshakeTimeoutContext(ssl.SSLContext):
    """
    Client TLS context that bounds the handshake separately from the dial.
    The socket timeout in effect before wrapping is restored afterwards.
    """

    handshake_timeout: Optional[float] = TLS_HANDSHAKE_TIMEOUT

    def wrap_socket(self, sock, *args, **kwargs):
        timeout = sock.gettimeout()
        sock.settimeout(self.handshake_timeout)
        ssl_sock = super().wrap_socket(sock, *args, **kwargs)
        ssl_sock.settimeout(timeout)
        return ssl_sock


def new_tls_config(insecure: bool = False) -> ssl.SSLContext:
    """
    Returns the hardened client TLS context used unless the caller supplies
    its own.
    """
    ssl_context = HandshakeTimeoutContext(ssl.PROTOCOL_TLS_CLIENT)
    ssl_context.load_default_certs(ssl.Purpose.SERVER_AUTH)
    ssl_context.minimum_version = ssl.TLSVersion.TLSv1_2
    ssl_context.set_ciphers(":".join(DEFAULT_CIPHERS))
    if insecure:
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
    return ssl_context


def meta_headers_filter(meta_headers: Optional[MetaHeaders]) -> Mapping[str, str]:
    """
    Keep only the caller supplied X-Meta-* headers. Multi-valued headers are
    folded the way HTTP allows.
    """
    result = {}
    for name, value in (meta_headers or {}).items():
        if not name.lower().startswith(META_HEADER_PREFIX):
            continue
        if not isinstance(value, str):
            value = ", ".join(value)
        result[name] = value
    return result


def docker_headers(
    user_agent: str, meta_headers: Optional[MetaHeaders] = None
) -> Mapping[str, str]:
    """
    Returns the headers attached to every outbound request.
    """
    headers = {
        "User-Agent": user_agent,
        # Sessions are short lived and switch hosts, never reuse a connection.
        "Connection": "close",
    }
    headers.update(meta_headers_filter(meta_headers))
    return headers


def trusted_location(url: str) -> bool:
    """
    Returns true if url is HTTPS to one of the trusted hosts or a subdomain.
    """
    url_data = urllib.parse.urlparse(url)
    if url_data.scheme != "https":
        return False
    hostname = (url_data.hostname or "").lower()
    return any(
        hostname == trusted or hostname.endswith("." + trusted)
        for trusted in TRUSTED_HOSTS
    )


def add_required_headers_to_redirected_request(
    req: requests.PreparedRequest, origin: requests.PreparedRequest
) -> None:
    """
    Set the headers of a redirected request from the original request.

    Every header is carried over only when both the original and the new
    location are trusted. Otherwise everything except Authorization is.
    """
    headers = CaseInsensitiveDict(origin.headers)
    if not (trusted_location(req.url) and trusted_location(origin.url)):
        if "Authorization" in headers:
            LOGGER.debug("Dropping Authorization on redirect to %s", req.url)
        headers.pop("Authorization", None)

    for name in REBUILT_HEADERS:
        headers.pop(name, None)
        if name in req.headers:
            headers[name] = req.headers[name]
    req.headers = headers


class RegistrySession(requests.Session):
    """
    A requests session that applies the registry redirect header policy on
    every redirect hop instead of requests' own auth stripping.

    Not safe for concurrent use; create one session per repository operation.
    """

    def __init__(self) -> None:
        super().__init__()
        self._redirect_origin: Optional[requests.PreparedRequest] = None

    def resolve_redirects(self, resp, req, **kwargs):  # type: ignore
        self._redirect_origin = req
        return super().resolve_redirects(resp, req, **kwargs)

    def rebuild_auth(self, prepared_request, response):  # type: ignore
        origin = self._redirect_origin or response.request
        add_required_headers_to_redirected_request(prepared_request, origin)


class RegistryAdapter(HTTPAdapter):
    """
    Connection adapter carrying the TLS context and dial timeout shared by
    all registry sessions.
    """

    def __init__(self, ssl_context: Optional[ssl.SSLContext] = None, **kwargs) -> None:
        self.ssl_context = ssl_context or new_tls_config()
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        kwargs["ssl_context"] = self.ssl_context
        return super().init_poolmanager(*args, **kwargs)

    def proxy_manager_for(self, proxy, **proxy_kwargs):
        proxy_kwargs["ssl_context"] = self.ssl_context
        return super().proxy_manager_for(proxy, **proxy_kwargs)

    def send(self, request, timeout=None, **kwargs):  # type: ignore
        if timeout is None:
            timeout = (DIAL_TIMEOUT, None)
        return super().send(request, timeout=timeout, **kwargs)


class Transport:
    """
    Process-wide HTTP configuration. Build it once and hand it to the
    Service; every session it creates shares its adapters.
    """

    def __init__(
        self,
        ssl_context: Optional[ssl.SSLContext] = None,
        user_agent: Optional[str] = None,
        adapter: Optional[requests.adapters.BaseAdapter] = None,
        insecure_adapter: Optional[requests.adapters.BaseAdapter] = None,
    ) -> None:
        self.user_agent = user_agent or build_user_agent()
        self.adapter = adapter or RegistryAdapter(ssl_context)
        self.insecure_adapter = (
            insecure_adapter or adapter or RegistryAdapter(new_tls_config(True))
        )

    def new_session(
        self,
        meta_headers: Optional[MetaHeaders] = None,
        auth: Optional[requests.auth.AuthBase] = None,
        secure: bool = True,
    ) -> RegistrySession:
        """
        Returns a fresh session decorated with the default headers.
        """
        session = RegistrySession()
        adapter = self.adapter if secure else self.insecure_adapter
        for prefix in ("https://", "http://"):
            session.mount(prefix, adapter)
        session.verify = secure
        session.headers.update(docker_headers(self.user_agent, meta_headers))
        session.auth = auth
        return session

    def close(self) -> None:
        """
        Close the pooled connections of the shared adapters.
        """
        self.adapter.close()
        if self.insecure_adapter is not self.adapter:
            self.insecure_adapter.close()


def header_values(headers: Mapping[str, str], name: str) -> List[str]:
    """
    Split a comma separated response header into its stripped values.
    """
    values = headers.get(name, "").split(",")
    return [value.strip() for value in values if value.strip()]
