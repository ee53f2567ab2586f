"""
Registry authentication: legacy index tokens, distribution bearer tokens and
the login handshake.

See https://docs.docker.com/registry/spec/auth/token/
"""
from functools import partialmethod
import logging
from typing import Dict, List, Mapping, Optional, Sequence, Tuple
import urllib.parse

import requests
from requests.auth import AuthBase, HTTPBasicAuth

from .endpoint import Endpoint
from .exceptions import (
    ERROR_CODE_UNAUTHORIZED,
    HTTPRequestError,
    UnauthorizedError,
    V2Error,
    decode_v2_errors,
    translate_v2_auth_error,
)
from .transport import Transport
from .types import INDEX_SERVER, APIVersion, AuthConfig

LOGGER = logging.getLogger(__name__)

CLIENT_ID = "dualregistry"


def _split_quote(s: str, dels: str, quotes: str = '"', escape: str = "\\") -> List[str]:
    """
    Split s by any character present in dels. However treat anything
    surrounded by a character in quotes as a literal. Additionally
    any character preceeded by escape is treated as a literal.

    Returns a list of split tokens with the split delimeter between each token.
    The length of the result will always be odd with the even indexed elements
    being the split data and the odd indexed elements being the delimeters
    between the even elements.

    _split_quote('a="b,c",d=f', '=,') => ['a', '=', 'b,c', ',', 'd', '=', 'f']
    """
    part: List[str] = []
    result: List[str] = []

    quote = None
    escaped = False
    for ch in s:
        if escaped:
            part.append(ch)
            escaped = False
        elif ch == escape:
            escaped = True
        elif quote and ch == quote:
            quote = None
        elif quote:
            part.append(ch)
        elif ch in dels:
            result.append("".join(part))
            result.append(ch)
            part.clear()
        elif ch in quotes:
            quote = ch
        else:
            part.append(ch)
    result.append("".join(part))

    return result


def parse_challenge(header: str) -> Tuple[str, Dict[str, str]]:
    """
    Parse a WWW-Authenticate header into its scheme and parameters.

    parse_challenge('Bearer realm="https://a/token",service="reg"')
        => ('bearer', {'realm': 'https://a/token', 'service': 'reg'})
    """
    scheme, _, rest = header.strip().partition(" ")
    parts = _split_quote(rest.strip(), "=,")
    params = {
        parts[i].strip().lower(): parts[i + 2]
        for i in range(0, len(parts) - 2, 4)
        if parts[i + 1] == "="
    }
    return scheme.lower(), params


class TokenScope:
    """
    The resource and actions a bearer token is requested for.
    """

    def __init__(
        self, resource: str = "repository", name: str = "", actions: Sequence[str] = ()
    ) -> None:
        self.resource = resource
        self.name = name
        self.actions = list(actions)

    def __str__(self) -> str:
        return "{}:{}:{}".format(self.resource, self.name, ",".join(self.actions))

    @classmethod
    def for_action(cls, name: str, action: str) -> "TokenScope":
        """
        Pull operations only need pull access; push needs both.
        """
        if action == "push":
            return cls("repository", name, ["push", "pull"])
        return cls("repository", name, ["pull"])


class V1TokenAuth(AuthBase):
    """
    Authorization for the legacy index protocol.

    Requests flagged with X-Docker-Token: true send basic credentials so the
    index hands out a token. Once a token is known it is sent as
    "Authorization: Token ..." unless the request already carries an
    Authorization header. Standalone registries get basic auth on every request.
    """

    def __init__(
        self, auth_config: Optional[AuthConfig] = None, always_set_basic_auth=False
    ) -> None:
        self.auth_config = auth_config or AuthConfig()
        self.always_set_basic_auth = always_set_basic_auth
        self.tokens: List[str] = []

    def _basic(self) -> Optional[HTTPBasicAuth]:
        basic = self.auth_config.basic()
        return HTTPBasicAuth(*basic) if basic else None

    def __call__(self, r: requests.PreparedRequest) -> requests.PreparedRequest:
        basic = self._basic()
        if self.always_set_basic_auth and basic:
            return basic(r)

        if "Authorization" not in r.headers:
            if r.headers.get("X-Docker-Token") == "true" and basic:
                r = basic(r)
            elif self.tokens:
                r.headers["Authorization"] = "Token " + ",".join(self.tokens)
        r.register_hook("response", self._capture_token)
        return r

    def _capture_token(self, resp: requests.Response, **kwargs) -> None:
        token = resp.headers.get("X-Docker-Token")
        if token:
            self.tokens = [token]


class TokenAuthorizer:
    """
    Wrapper around registry HTTP requests that invokes the auth endpoint a
    401 challenge points to and retries with the token it hands out.
    Tokens are cached per registry repository for the life of the object.
    """

    def __init__(
        self,
        session: requests.Session,
        auth_config: Optional[AuthConfig] = None,
        scope: Optional[TokenScope] = None,
    ) -> None:
        self.session = session
        self.auth_config = auth_config or AuthConfig()
        self.scope = scope
        self.access_tokens: Dict[Tuple[str, str], str] = {}

    @staticmethod
    def auth_key(url: str) -> Tuple[str, str]:
        """
        Returns a hashable key for the domain covered by the registry url.
        """
        url_data = urllib.parse.urlparse(url)
        path_parts = url_data.path.split("/")
        return (url_data.netloc, "/".join(path_parts[0:4]))

    def request(
        self,
        url: str,
        *,
        method="GET",
        headers: Optional[Mapping[str, str]] = None,
        **kwargs,
    ) -> requests.Response:
        """
        Makes a request, authenticating if the registry asks for it.
        """
        auth_key = self.auth_key(url)
        headers = dict(headers or {})
        basic_auth = None
        for attempt in range(2):
            auth_token = self.access_tokens.get(auth_key)
            if auth_token:
                headers["Authorization"] = "Bearer " + auth_token

            resp = self.session.request(
                method, url, headers=headers, auth=basic_auth, **kwargs
            )
            if attempt > 0 or resp.status_code != 401:
                break

            scheme, params = parse_challenge(resp.headers.get("WWW-Authenticate", ""))
            if scheme == "bearer" and "realm" in params:
                resp.close()
                self.access_tokens[auth_key] = self.fetch_token(params)
            elif scheme == "basic" and self.auth_config.basic():
                resp.close()
                basic_auth = self.auth_config.basic()
            else:
                break

        return resp

    def fetch_token(self, challenge: Mapping[str, str]) -> str:
        """
        Exchange our credentials for a token at the challenge's realm.
        """
        realm = challenge["realm"]
        params = {}
        if challenge.get("service"):
            params["service"] = challenge["service"]
        if self.scope is not None:
            params["scope"] = str(self.scope)
        elif challenge.get("scope"):
            params["scope"] = challenge["scope"]

        if self.auth_config.identity_token:
            params.update(
                grant_type="refresh_token",
                refresh_token=self.auth_config.identity_token,
                client_id=CLIENT_ID,
            )
            resp = self.session.post(realm, data=params)
        else:
            if self.auth_config.basic():
                params.update(account=self.auth_config.username)
            resp = self.session.get(
                realm, params=params, auth=self.auth_config.basic()
            )

        if resp.status_code == 401:
            raise UnauthorizedError("token request to {} was rejected".format(realm))
        if resp.status_code != 200:
            raise HTTPRequestError(
                "HTTP code {} fetching token from {}".format(resp.status_code, realm),
                resp,
            )
        body = resp.json()
        token = body.get("token") or body.get("access_token")
        if not token:
            raise UnauthorizedError("no token in response from " + realm)
        LOGGER.debug("Obtained bearer token from %s", realm)
        return token

    head = partialmethod(request, method="HEAD")
    get = partialmethod(request, method="GET")


def login_v1(auth_config: AuthConfig, endpoint: Endpoint, transport: Transport) -> str:
    """
    Check credentials against a legacy index.
    """
    server_address = endpoint.version_string(APIVersion.V1)
    LOGGER.debug("attempting v1 login to registry endpoint %s", server_address)

    session = transport.new_session(secure=endpoint.secure)
    resp = session.get(server_address + "users/", auth=auth_config.basic())
    if resp.status_code == 200:
        return "Login Succeeded"
    if resp.status_code == 401:
        raise UnauthorizedError("Wrong login/password, please try again")
    if resp.status_code == 403:
        if server_address == INDEX_SERVER:
            raise UnauthorizedError(
                "Login: Account is not active. Please check your e-mail for a "
                "confirmation link."
            )
        raise UnauthorizedError(
            "Login: Account is not active. Please see the documentation of the "
            "registry {} for instructions how to activate it.".format(server_address)
        )
    raise HTTPRequestError(
        "Login: {} (Code: {}; Headers: {})".format(
            resp.text, resp.status_code, dict(resp.headers)
        ),
        resp,
    )


def login_v2(auth_config: AuthConfig, endpoint: Endpoint, transport: Transport) -> str:
    """
    Check credentials against a distribution registry by authenticating the
    base /v2/ route.
    """
    LOGGER.debug("attempting v2 login to registry endpoint %s", endpoint.url)

    session = transport.new_session(secure=endpoint.secure)
    authorizer = TokenAuthorizer(session, auth_config)
    resp = authorizer.get(endpoint.version_string(APIVersion.V2))
    if resp.status_code == 200:
        return "Login Succeeded"

    err = decode_v2_errors(resp)
    if err is None:
        raise HTTPRequestError(
            "HTTP code {} logging in to {}".format(resp.status_code, endpoint.url),
            resp,
        )
    if resp.status_code == 401 and not any(
        e.code == ERROR_CODE_UNAUTHORIZED for e in err.errors
    ):
        err.errors.insert(0, V2Error(ERROR_CODE_UNAUTHORIZED, status_code=401))
    raise translate_v2_auth_error(err)


def login(auth_config: AuthConfig, endpoint: Endpoint, transport: Transport) -> str:
    """
    Log in to endpoint with the protocol it speaks. Returns the status
    message to show the user.
    """
    if endpoint.version == APIVersion.V2:
        status = login_v2(auth_config, endpoint, transport)
    else:
        status = login_v1(auth_config, endpoint, transport)
    LOGGER.info("Login to %s: %s", endpoint.url, status)
    return status
