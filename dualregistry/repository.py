"""
The protocol independent Repository and Layer contracts and the composite
that tries several protocol backends in order.
"""
import abc
import logging
from typing import BinaryIO, Callable, List, Optional, Sequence, Tuple, TypeVar

import requests

from .exceptions import RegistryException
from .transport import MetaHeaders
from .types import AuthConfig

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

FetchResult = Tuple[BinaryIO, int, Callable[[], bool]]


class Layer(metaclass=abc.ABCMeta):
    """
    One filesystem layer of an image, whichever protocol it came from.
    """

    @abc.abstractmethod
    def digest(self) -> str:
        """
        Returns the layer digest in ALG:HASH form, or a synthetic random:ID
        digest for legacy layers.
        """

    @abc.abstractmethod
    def v1_json(self) -> bytes:
        """
        Returns the legacy image JSON describing this layer.
        """

    @abc.abstractmethod
    def fetch(self) -> FetchResult:
        """
        Open the layer content. Returns (blob, size, verify); the caller must
        drain and close blob before calling verify().
        """


class Repository(metaclass=abc.ABCMeta):
    """
    A named image repository on some registry.
    """

    @abc.abstractmethod
    def name(self) -> str:
        """
        Returns the repository's remote name.
        """

    @abc.abstractmethod
    def tags(self) -> List[str]:
        """
        Returns every tag in the repository.
        """

    @abc.abstractmethod
    def layers(self, tag: str) -> List[Layer]:
        """
        Returns the layers of tag in the order the backend lists them. Legacy
        ancestry is base layer first while schema1 manifests list the most
        recent layer first.
        """


class CommonRepository(Repository):
    """
    State shared by every protocol backend.
    """

    def __init__(
        self,
        name: str,
        action: str = "pull",
        meta_headers: Optional[MetaHeaders] = None,
        auth_config: Optional[AuthConfig] = None,
    ) -> None:
        self._name = name
        self.action = action
        self.meta_headers = meta_headers
        self.auth_config = auth_config or AuthConfig()

    def name(self) -> str:
        """
        Returns the repository name as given, without the index.
        """
        return self._name

    def __str__(self) -> str:
        return "{}({})".format(type(self).__name__, self._name)


class FallbackRepository(Repository):
    """
    Tries each member repository in order and returns the first success.

    When every member fails the last member's error is raised; the earlier
    failures are only logged.
    """

    def __init__(self, repositories: Sequence[Optional[Repository]]) -> None:
        self.repositories = [repo for repo in repositories if repo is not None]

    def __len__(self) -> int:
        return len(self.repositories)

    def name(self) -> str:
        for repo in self.repositories:
            return repo.name()
        return ""

    def _first_success(self, operation: str, fn: Callable[[Repository], T]) -> T:
        last_error: Optional[Exception] = None
        for repo in self.repositories:
            try:
                return fn(repo)
            except (RegistryException, requests.RequestException) as exc:
                LOGGER.debug("%s failed on %s: %s", operation, repo, exc)
                last_error = exc
        if last_error is None:
            raise RegistryException("no repositories configured for " + operation)
        raise last_error

    def tags(self) -> List[str]:
        return self._first_success("tags", lambda repo: repo.tags())

    def layers(self, tag: str) -> List[Layer]:
        return self._first_success(
            "layers({})".format(tag), lambda repo: repo.layers(tag)
        )
