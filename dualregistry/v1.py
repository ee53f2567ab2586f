"""
Repository and Layer implementations over the legacy v1 session.
"""
import logging
import threading
from typing import BinaryIO, Dict, List, Mapping, Optional, Sequence

from .digest import digest_to_img_id, img_id_to_digest
from .exceptions import AlreadyExistsError, NotFoundError, RegistryException
from .repository import CommonRepository, FetchResult, Layer
from .session import Session, loop_endpoints
from .transport import MetaHeaders
from .types import AuthConfig, ImgData, RepositoryData

LOGGER = logging.getLogger(__name__)


def mirror_endpoint(mirror: str) -> str:
    """
    Returns the v1 base URL of a configured mirror.
    """
    return mirror.rstrip("/") + "/v1/"


def create_image_index(
    images: Sequence[str], tags: Mapping[str, Sequence[str]]
) -> List[ImgData]:
    """
    Build the image list sent to the index when pushing. An image gets one
    entry per tag; untagged images still get an entry so they stay
    associated with the repository.
    """
    index = []
    for img_id in images:
        img_tags = tags.get(img_id)
        if img_tags:
            index.extend(ImgData(img_id, tag=tag) for tag in img_tags)
        else:
            index.append(ImgData(img_id, tag=""))
    return index


class V1Repository(CommonRepository):
    """
    A repository served by a legacy index and its registry endpoints.

    Mirrors are tried before the endpoints the index hands out. Repository
    data and the tag map are fetched once per instance.
    """

    def __init__(
        self,
        name: str,
        session: Session,
        action: str = "pull",
        meta_headers: Optional[MetaHeaders] = None,
        auth_config: Optional[AuthConfig] = None,
        mirrors: Sequence[str] = (),
    ) -> None:
        super().__init__(name, action, meta_headers, auth_config)
        self.session = session
        self.mirrors = [mirror_endpoint(mirror) for mirror in mirrors]
        self._lock = threading.Lock()
        self._repo_data: Optional[RepositoryData] = None
        self._tags: Optional[Dict[str, str]] = None
        self._sizes: Dict[str, int] = {}
        self._img_index: Dict[str, List[ImgData]] = {}

    def repo_data(self) -> RepositoryData:
        """
        Returns the index answer for this repository, fetched once and cached.
        """
        with self._lock:
            if self._repo_data is None:
                self._repo_data = self.session.get_repository_data(self.name())
            return self._repo_data

    def endpoints(self) -> List[str]:
        """
        Returns the candidate endpoints for reads, mirrors first.
        """
        return self.mirrors + self.repo_data().endpoints

    def tokens(self) -> List[str]:
        """
        Returns the access tokens the index granted.
        """
        return self.repo_data().tokens

    def tag_map(self) -> Dict[str, str]:
        """
        Returns the tag name to image ID map of the repository.
        """
        repo_data = self.repo_data()
        endpoints = self.mirrors + repo_data.endpoints
        with self._lock:
            if self._tags is None:
                self._tags = self.session.get_remote_tags(
                    endpoints, self.name(), repo_data.tokens
                )
            return self._tags

    def tags(self) -> List[str]:
        """
        Returns the tag names of the repository in sorted order.
        """
        return sorted(self.tag_map())

    def layers(self, tag: str) -> List[Layer]:
        """
        Returns the layers of tag, most recent first. The history and the JSON
        of every layer are read from the first endpoint that serves them all,
        and layer sizes are recorded as each JSON arrives.
        """
        img_id = self.tag_map().get(tag)
        if img_id is None:
            raise NotFoundError(
                "tag {} not found in repository {}".format(tag, self.name())
            )

        tokens = self.tokens()

        def _read_image(endpoint: str) -> List[Layer]:
            history = self.session.get_remote_history(img_id, endpoint, tokens)
            layers: List[Layer] = []
            for layer_id in history:
                json_raw, size = self.session.get_remote_image_json(
                    layer_id, endpoint, tokens
                )
                self.record_layer_size(layer_id, size)
                layers.append(V1Layer(self, layer_id, endpoint, json_raw))
            return layers

        layers = loop_endpoints(self.endpoints(), _read_image)
        LOGGER.debug("Image %s has %d layers", img_id, len(layers))
        return layers

    def layer_size(self, img_id: str) -> int:
        """
        Returns the size the registry reported for a layer, or -1.
        """
        with self._lock:
            return self._sizes.get(img_id, -1)

    def record_layer_size(self, img_id: str, size: int) -> None:
        """Remember the size reported for a layer."""
        with self._lock:
            self._sizes[img_id] = size

    def convert_to_digest(self, img_id: str) -> str:
        """
        Map a v1 image ID into the digest space used by pull callers.
        """
        return img_id_to_digest(img_id)

    def convert_from_digest(self, dgst: str) -> str:
        """Inverse of convert_to_digest."""
        return digest_to_img_id(dgst)

    def init_push(
        self,
        local_name: str,
        img_list: Sequence[str],
        tags_by_image: Mapping[str, Sequence[str]],
    ) -> RepositoryData:
        """
        Register the images of local_name with the index. Images left out here
        are not associated with the repository.
        """
        self._img_index[local_name] = create_image_index(img_list, tags_by_image)
        repo_data = self.session.push_image_json_index(
            self.name(), self._img_index[local_name], False
        )
        with self._lock:
            self._repo_data = repo_data
        LOGGER.info("Pushing repository %s (%d images)", self.name(), len(img_list))
        return repo_data

    def _push_data(self) -> RepositoryData:
        with self._lock:
            if self._repo_data is None:
                raise RegistryException("init_push must be called before pushing")
            return self._repo_data

    def push_layer(self, img_id: str, json_raw: bytes, layer: BinaryIO) -> bool:
        """
        Upload one image to the first registry endpoint that accepts it.
        Returns False if the registry already had the image.

        layer is consumed by the upload; a failed attempt is not replayed
        against the next endpoint from the start of the stream.
        """
        repo_data = self._push_data()

        def _push(endpoint: str) -> bool:
            try:
                self.session.lookup_remote_image(img_id, endpoint, repo_data.tokens)
                LOGGER.info("Image %s already pushed, skipping", img_id)
                return False
            except NotFoundError:
                pass

            img_data = ImgData(img_id)
            try:
                self.session.push_image_json_registry(
                    img_data, json_raw, endpoint, repo_data.tokens
                )
            except AlreadyExistsError:
                LOGGER.info("Image %s already pushed, skipping", img_id)
                return False

            checksum, payload = self.session.push_image_layer_registry(
                img_id, layer, endpoint, json_raw, repo_data.tokens
            )
            img_data.checksum = checksum
            img_data.checksum_payload = payload
            self.session.push_image_checksum_registry(
                img_data, endpoint, repo_data.tokens
            )
            self._record_checksum(img_id, checksum)
            LOGGER.info("Image %s pushed to %s", img_id, endpoint)
            return True

        return loop_endpoints(repo_data.endpoints, _push)

    def _record_checksum(self, img_id: str, checksum: str) -> None:
        for index in self._img_index.values():
            for img_data in index:
                if img_data.id == img_id:
                    img_data.checksum = checksum

    def push_tag(self, img_id: str, tag: str) -> None:
        """
        Point tag at img_id on the first endpoint that accepts it.
        """
        repo_data = self._push_data()
        loop_endpoints(
            repo_data.endpoints,
            lambda endpoint: self.session.push_registry_tag(
                self.name(), img_id, tag, endpoint, repo_data.tokens
            ),
        )

    def finalize_push(self, local_name: str) -> None:
        """
        Submit the checksums of the pushed images to the index.
        """
        img_index = self._img_index.get(local_name)
        if img_index is None:
            raise RegistryException(
                "could not find image index for {}, call init_push first".format(
                    local_name
                )
            )
        repo_data = self._push_data()
        self.session.push_image_json_index(
            self.name(), img_index, True, repo_data.endpoints
        )


class V1Layer(Layer):
    """
    A legacy layer, addressed by image ID. The layer is read from the same
    endpoint that served the image's history and JSON.
    """

    def __init__(
        self, repository: V1Repository, img_id: str, endpoint: str, json_raw: bytes
    ) -> None:
        self.repository = repository
        self.id = img_id
        self.endpoint = endpoint
        self.json_raw = json_raw

    def __repr__(self) -> str:
        return "V1Layer({!r})".format(self.id)

    def digest(self) -> str:
        return img_id_to_digest(self.id)

    def v1_json(self) -> bytes:
        return self.json_raw

    def fetch(self) -> FetchResult:
        repo = self.repository
        size = repo.layer_size(self.id)
        blob = repo.session.get_remote_image_layer(
            self.id, self.endpoint, repo.tokens(), size
        )
        # Legacy layers carry no content digest to check against.
        return blob, size, lambda: True
