"""
Static registry configuration: mirrors, insecure registries and the index
configurations names are resolved against.
"""
import ipaddress
import logging
from typing import Dict, Iterable, List, Optional, Union
import urllib.parse

from .exceptions import InvalidNameError, RegistryException
from .names import (
    local_name_from_remote,
    normalize_index_name,
    normalize_library_name,
    split_repos_name,
    validate_index_name,
    validate_no_scheme,
    validate_remote_name,
)
from .types import INDEX_NAME, IndexInfo, RepositoryInfo

LOGGER = logging.getLogger(__name__)

Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

DEFAULT_INSECURE_CIDRS = ("127.0.0.0/8", "::1/128")


def validate_mirror(value: str) -> str:
    """
    Normalize a mirror URL to its scheme://host base.
    """
    url_data = urllib.parse.urlparse(value)
    if url_data.scheme not in ("http", "https"):
        raise RegistryException(
            "unsupported scheme {!r} in mirror {}".format(url_data.scheme, value)
        )
    if url_data.path.strip("/") or url_data.query or url_data.fragment:
        raise RegistryException("unsupported path/query/fragment in mirror " + value)
    return "{}://{}".format(url_data.scheme, url_data.netloc)


class ServiceOptions:
    """
    Options supplied by the engine when the registry service is created.
    """

    def __init__(
        self,
        mirrors: Optional[Iterable[str]] = None,
        insecure_registries: Optional[Iterable[str]] = None,
    ) -> None:
        self.mirrors = list(mirrors or [])
        self.insecure_registries = list(insecure_registries or [])


class ServiceConfig:
    """
    Resolved configuration. Immutable after construction.
    """

    def __init__(self, options: Optional[ServiceOptions] = None) -> None:
        options = options or ServiceOptions()

        self.mirrors: List[str] = [validate_mirror(m) for m in options.mirrors]
        self.insecure_registry_cidrs: List[Network] = [
            ipaddress.ip_network(cidr) for cidr in DEFAULT_INSECURE_CIDRS
        ]
        self.index_configs: Dict[str, IndexInfo] = {}

        for registry in options.insecure_registries:
            try:
                self.insecure_registry_cidrs.append(
                    ipaddress.ip_network(registry, strict=False)
                )
                continue
            except ValueError:
                pass
            # Not a CIDR, treat it as an index name.
            self.index_configs[registry] = IndexInfo(
                name=registry, mirrors=(), secure=False, official=False
            )
            LOGGER.warning("Registry %s is configured as insecure", registry)

        self.index_configs[INDEX_NAME] = IndexInfo(
            name=INDEX_NAME,
            mirrors=tuple(self.mirrors),
            secure=True,
            official=True,
        )

    def is_secure_index(self, index_name: str) -> bool:
        """
        Returns false if the index was configured as insecure, or is a literal
        address inside one of the insecure networks. No DNS lookups are made.
        """
        index = self.index_configs.get(index_name)
        if index is not None:
            return index.secure

        host = urllib.parse.urlsplit("//" + index_name).hostname or index_name
        if host == "localhost":
            return False
        try:
            addr = ipaddress.ip_address(host)
        except ValueError:
            return True
        return not any(addr in network for network in self.insecure_registry_cidrs)

    def new_index_info(self, index_name: str) -> IndexInfo:
        """
        Returns the IndexInfo for an index name.
        """
        index_name = normalize_index_name(index_name)
        validate_index_name(index_name)

        index = self.index_configs.get(index_name)
        if index is not None:
            return index
        return IndexInfo(
            name=index_name,
            mirrors=(),
            secure=self.is_secure_index(index_name),
            official=False,
        )

    def new_repository_info(self, name: str) -> RepositoryInfo:
        """
        Resolve a user supplied repository name.
        """
        validate_no_scheme(name)
        index_name, remote_name = split_repos_name(name)
        validate_remote_name(remote_name)

        index = self.new_index_info(index_name)
        if not index.official:
            local_name = local_name_from_remote(index.name, remote_name)
            return RepositoryInfo(
                index=index,
                remote_name=remote_name,
                local_name=local_name,
                canonical_name=local_name,
                official=False,
            )

        normalized = normalize_library_name(remote_name)
        if not normalized:
            raise InvalidNameError("invalid repository name: " + name)
        official = "/" not in normalized
        remote_name = "library/" + normalized if official else normalized
        return RepositoryInfo(
            index=index,
            remote_name=remote_name,
            local_name=normalized,
            canonical_name=INDEX_NAME + "/" + remote_name,
            official=official,
        )
