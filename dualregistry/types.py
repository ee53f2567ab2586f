"""
Data types shared by the resolver, the protocol sessions and the service.
"""
import base64
import enum
import json
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Tuple

from .exceptions import RegistryException

INDEX_NAME = "docker.io"
INDEX_HOSTNAME = "index.docker.io"
INDEX_SERVER = "https://index.docker.io/v1/"
DEFAULT_V2_REGISTRY = "https://registry-1.docker.io"

AUTH_HEADER = "X-Registry-Auth"


class APIVersion(enum.IntEnum):
    """
    Registry protocol versions.
    """

    UNKNOWN = 0
    V1 = 1
    V2 = 2

    def __str__(self) -> str:
        return "v{}".format(int(self)) if self else "unknown"


class IndexInfo(NamedTuple):
    """
    Identifies a registry index.
    """

    name: str
    mirrors: Tuple[str, ...] = ()
    secure: bool = True
    official: bool = False

    def auth_config_key(self) -> str:
        """
        Returns the key credentials for this index are stored under.
        """
        if self.official:
            return INDEX_SERVER
        return self.name


class RepositoryInfo(NamedTuple):
    """
    Describes a resolved repository name.

    remote_name is the name on the registry ("library/ubuntu"), local_name the
    name the engine shows ("ubuntu") and canonical_name the fully qualified one
    ("docker.io/library/ubuntu").
    """

    index: IndexInfo
    remote_name: str
    local_name: str
    canonical_name: str
    official: bool

    def search_term(self) -> str:
        """
        Returns the term to send to the index's search endpoint.
        """
        if self.index.official:
            return self.local_name
        return self.remote_name


class AuthConfig:
    """
    Credentials supplied by the caller for a single registry.
    """

    def __init__(
        self,
        username: str = "",
        password: str = "",
        email: str = "",
        server_address: str = "",
        identity_token: str = "",
    ) -> None:
        self.username = username
        self.password = password
        self.email = email
        self.server_address = server_address
        self.identity_token = identity_token

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, AuthConfig):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return "AuthConfig(username={!r}, server_address={!r})".format(
            self.username, self.server_address
        )

    def has_credentials(self) -> bool:
        """
        Returns true if a username or identity token is set.
        """
        return bool(self.username or self.identity_token)

    def basic(self) -> Optional[Tuple[str, str]]:
        """
        Returns the (user, password) tuple requests expects, if any.
        """
        if not self.username:
            return None
        return (self.username, self.password)

    def to_dict(self) -> Dict[str, str]:
        """
        Serialize using the engine's JSON field names.
        """
        result = {
            "username": self.username,
            "password": self.password,
            "email": self.email,
            "serveraddress": self.server_address,
            "identitytoken": self.identity_token,
        }
        return {key: value for key, value in result.items() if value}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AuthConfig":
        """
        Parse the engine's JSON auth representation.
        """
        return cls(
            username=data.get("username", ""),
            password=data.get("password", ""),
            email=data.get("email", ""),
            server_address=data.get("serveraddress", ""),
            identity_token=data.get("identitytoken", ""),
        )


def encode_auth_header(auth_config: AuthConfig) -> str:
    """
    Encode auth_config as an X-Registry-Auth header value.
    """
    data = json.dumps(auth_config.to_dict()).encode("utf-8")
    return base64.urlsafe_b64encode(data).decode("ascii")


def decode_auth_header(value: str) -> AuthConfig:
    """
    Decode an X-Registry-Auth header value. Clients are not consistent about
    padding so it is restored before decoding.
    """
    value = value.strip()
    value += "=" * (-len(value) % 4)
    try:
        data = json.loads(base64.urlsafe_b64decode(value.encode("ascii")))
    except ValueError as exc:
        raise RegistryException("invalid {} header: {}".format(AUTH_HEADER, exc))
    if not isinstance(data, dict):
        raise RegistryException("invalid {} header".format(AUTH_HEADER))
    return AuthConfig.from_dict(data)


class ImgData:
    """
    Legacy record of one image's checksum and tag association.
    """

    def __init__(
        self, id: str, checksum: str = "", checksum_payload: str = "", tag: str = ""
    ) -> None:
        # pylint: disable=redefined-builtin
        self.id = id
        self.checksum = checksum
        self.checksum_payload = checksum_payload
        self.tag = tag

    def __repr__(self) -> str:
        return "ImgData(id={!r}, tag={!r})".format(self.id, self.tag)

    def to_dict(self) -> Dict[str, str]:
        """
        Returns the wire form. The checksum payload is never sent.
        """
        result = {"id": self.id}
        if self.checksum:
            result["checksum"] = self.checksum
        if self.tag:
            result["Tag"] = self.tag
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ImgData":
        """
        Parse one entry of an index image list.
        """
        return cls(
            id=data["id"],
            checksum=data.get("checksum", ""),
            tag=data.get("Tag", ""),
        )


class RepositoryData:
    """
    Result of asking the index which endpoints and tokens serve a repository.
    """

    def __init__(
        self,
        img_list: Optional[Dict[str, ImgData]] = None,
        endpoints: Optional[List[str]] = None,
        tokens: Optional[List[str]] = None,
    ) -> None:
        self.img_list = img_list or {}
        self.endpoints = endpoints or []
        self.tokens = tokens or []


class SearchResult:
    """
    One repository summary returned by an index search.
    """

    def __init__(
        self,
        name: str,
        description: str = "",
        star_count: int = 0,
        is_official: bool = False,
        is_automated: bool = False,
    ) -> None:
        self.name = name
        self.description = description
        self.star_count = star_count
        self.is_official = is_official
        self.is_automated = is_automated

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SearchResult":
        return cls(
            name=data["name"],
            description=data.get("description") or "",
            star_count=data.get("star_count", 0),
            is_official=data.get("is_official", False),
            is_automated=data.get("is_automated", False),
        )


class SearchResults:
    """
    Response of an index search.
    """

    def __init__(
        self, query: str, num_results: int, results: List[SearchResult]
    ) -> None:
        self.query = query
        self.num_results = num_results
        self.results = results

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SearchResults":
        results = [SearchResult.from_dict(item) for item in data.get("results") or []]
        return cls(
            query=data.get("query", ""),
            num_results=data.get("num_results", len(results)),
            results=results,
        )


class PingResult(NamedTuple):
    """
    What a registry reported about itself when pinged.
    """

    version: str = ""
    standalone: bool = True
    api_version: APIVersion = APIVersion.UNKNOWN
