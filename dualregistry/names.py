"""
Parsing and validation of repository and index names.

These are pure string functions; resolving a name against the configured
indexes happens in ServiceConfig.
"""
import re
from typing import Tuple

from .exceptions import InvalidNameError
from .types import INDEX_HOSTNAME, INDEX_NAME

LIBRARY_PREFIX = "library/"

_NAMESPACE_CHARS = re.compile(r"^[a-z0-9_-]*$")
_REPO_CHARS = re.compile(r"^[a-z0-9_./-]+$")
_IMAGE_ID = re.compile(r"^[a-f0-9]{64}$")


def _looks_like_host(part: str) -> bool:
    return "." in part or ":" in part or part == "localhost"


def split_hostname(name: str) -> Tuple[str, str]:
    """
    Split a fully qualified repository name into (hostname, remote name).

    The official index can be addressed as docker.io, which is rewritten to
    the index host. A name with no "/" is not fully qualified.
    """
    slash = name.find("/")
    if slash <= 0:
        raise InvalidNameError(
            "invalid repository name: missing '/': {}".format(name)
        )
    hostname, remote_name = name[:slash], name[slash + 1 :]
    if hostname == INDEX_NAME:
        hostname = INDEX_HOSTNAME
    return hostname, remote_name


def split_repos_name(name: str) -> Tuple[str, str]:
    """
    Split a user supplied repository name into (index name, remote name).

    Names whose first component does not look like a host name belong to the
    official index, so "ubuntu" and "samalba/hipache" both resolve there.
    """
    index_name, sep, rest = name.partition("/")
    if not sep or not _looks_like_host(index_name):
        return INDEX_NAME, name
    return index_name, rest


def normalize_index_name(name: str) -> str:
    """
    Map every spelling of the official index to one name.
    """
    if name == INDEX_HOSTNAME:
        return INDEX_NAME
    return name


def normalize_library_name(name: str) -> str:
    """
    Strip the "library/" namespace official repositories live under.
    """
    if name.startswith(LIBRARY_PREFIX):
        return name[len(LIBRARY_PREFIX) :]
    return name


def validate_no_scheme(name: str) -> None:
    """
    Reject names that carry a URL scheme.
    """
    if "://" in name:
        raise InvalidNameError(
            'invalid repository name (ex: "registry.domain.tld/myrepos"): '
            + name
        )


def validate_index_name(name: str) -> None:
    """
    Check an index host name. It may be neither empty nor begin or end with
    a hyphen.
    """
    if not name or name.startswith("-") or name.endswith("-"):
        raise InvalidNameError(
            "invalid index name ({}). Cannot begin or end with a hyphen.".format(name)
        )


def validate_remote_name(remote_name: str) -> None:
    """
    Check the namespace and repository parts of a remote name.
    """
    namespace, sep, name = remote_name.partition("/")
    if not sep:
        namespace, name = "library", remote_name
        if _IMAGE_ID.match(name):
            raise InvalidNameError(
                "invalid repository name ({}), cannot specify 64-byte "
                "hexadecimal strings".format(name)
            )

    if not _NAMESPACE_CHARS.match(namespace):
        raise InvalidNameError(
            "invalid namespace name ({}). Only [a-z0-9-_] are allowed.".format(
                namespace
            )
        )
    if not 2 <= len(namespace) <= 255:
        raise InvalidNameError(
            "invalid namespace name ({}). Cannot be fewer than 2 or more than "
            "255 characters.".format(namespace)
        )
    if namespace.startswith("-") or namespace.endswith("-"):
        raise InvalidNameError(
            "invalid namespace name ({}). Cannot begin or end with a "
            "hyphen.".format(namespace)
        )
    if "--" in namespace:
        raise InvalidNameError(
            "invalid namespace name ({}). Cannot contain consecutive "
            "hyphens.".format(namespace)
        )
    if (
        not _REPO_CHARS.match(name)
        or name.startswith("/")
        or name.endswith("/")
        or "//" in name
    ):
        raise InvalidNameError(
            "invalid repository name ({}), only [a-z0-9-_.] are allowed".format(name)
        )


def local_name_from_remote(index_name: str, remote_name: str) -> str:
    return index_name + "/" + remote_name
