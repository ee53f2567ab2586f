"""
Client for the legacy v1 index/registry protocol.

The index tells us which registry endpoints serve a repository and hands out
tokens for them; image data is then fetched from those endpoints one at a
time until one answers.
"""
import hashlib
import json
import logging
from typing import (
    BinaryIO,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
)
import urllib.parse

import requests

from .auth import V1TokenAuth
from .endpoint import Endpoint
from .exceptions import (
    AlreadyExistsError,
    EndpointErrors,
    HTTPRequestError,
    NotFoundError,
    RegistryException,
    UnauthorizedError,
)
from .transport import MetaHeaders, Transport, header_values, trusted_location
from .types import (
    INDEX_SERVER,
    APIVersion,
    AuthConfig,
    ImgData,
    RepositoryData,
    SearchResults,
)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

CHUNK_SIZE = 2 ** 16


def loop_endpoints(candidates: Sequence[str], fn: Callable[[str], T]) -> T:
    """
    Call fn with each candidate endpoint in order and return the first
    result. If every call fails, raise EndpointErrors holding each failure.
    """
    errors: Dict[str, Exception] = {}
    for endpoint in candidates:
        try:
            return fn(endpoint)
        except (requests.RequestException, RegistryException) as exc:
            LOGGER.debug("Endpoint %s failed: %s", endpoint, exc)
            errors[endpoint] = exc
    raise EndpointErrors(errors)


def build_endpoints_list(values: Sequence[str], index_url: str) -> List[str]:
    """
    Turn the hosts of an X-Docker-Endpoints header into v1 base URLs using
    the index's scheme.
    """
    scheme = urllib.parse.urlparse(index_url).scheme or "https"
    return ["{}://{}/v1/".format(scheme, value) for value in values]


def _error_body(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return resp.text


def _no_auth(r: requests.PreparedRequest) -> requests.PreparedRequest:
    return r


class Session:
    """
    Authenticated conversation with one v1 index and the registry endpoints
    it points to.
    """

    def __init__(
        self,
        transport: Transport,
        auth_config: Optional[AuthConfig],
        endpoint: Endpoint,
        meta_headers: Optional[MetaHeaders] = None,
    ) -> None:
        self.auth_config = auth_config or AuthConfig()
        self.index_endpoint = endpoint

        # Standalone private registries over HTTPS want basic auth on every
        # request rather than index tokens.
        always_set_basic_auth = False
        if (
            self.auth_config.basic()
            and self.index_url() != INDEX_SERVER
            and endpoint.url.startswith("https://")
        ):
            info = endpoint.ping(transport)
            if info.standalone:
                LOGGER.debug("Endpoint %s is a standalone registry", endpoint)
                always_set_basic_auth = True

        self.authorizer = V1TokenAuth(self.auth_config, always_set_basic_auth)
        self.client = transport.new_session(
            meta_headers, auth=self.authorizer, secure=endpoint.secure
        )

    def index_url(self) -> str:
        return self.index_endpoint.version_string(APIVersion.V1)

    @staticmethod
    def _token_headers(tokens: Optional[Sequence[str]]) -> Dict[str, str]:
        if not tokens:
            return {}
        return {"Authorization": "Token " + ",".join(tokens)}

    def _get(self, url: str, tokens=None, **kwargs) -> requests.Response:
        LOGGER.debug("[registry] Calling GET %s", url)
        headers = self._token_headers(tokens)
        headers.update(kwargs.pop("headers", {}))
        return self.client.get(url, headers=headers, **kwargs)

    def get_repository_data(self, name: str) -> RepositoryData:
        """
        Ask the index for a repository's image list, endpoints and tokens.
        """
        url = "{}repositories/{}/images".format(self.index_url(), name)
        resp = self._get(url, headers={"X-Docker-Token": "true"})
        if resp.status_code == 401:
            raise UnauthorizedError("Authentication is required.")
        if resp.status_code == 404:
            raise NotFoundError("HTTP code 404: repository {} not found".format(name))
        if resp.status_code != 200:
            raise HTTPRequestError(
                "Error code {} trying to fetch repository data for {}: {}".format(
                    resp.status_code, name, _error_body(resp)
                ),
                resp,
            )

        tokens = []
        if resp.headers.get("X-Docker-Token"):
            tokens = [resp.headers["X-Docker-Token"]]

        if "X-Docker-Endpoints" in resp.headers:
            endpoints = build_endpoints_list(
                header_values(resp.headers, "X-Docker-Endpoints"), self.index_url()
            )
        else:
            # Standalone registries serve their own data.
            endpoints = [self.index_url()]

        img_list = {}
        for item in resp.json() or []:
            img = ImgData.from_dict(item)
            img_list[img.id] = img

        return RepositoryData(img_list=img_list, endpoints=endpoints, tokens=tokens)

    def get_remote_tags(
        self,
        endpoints: Sequence[str],
        name: str,
        tokens: Optional[Sequence[str]] = None,
    ) -> Dict[str, str]:
        """
        Returns a map of tag name to image ID from the first endpoint that
        answers.
        """

        def _fetch(endpoint: str) -> Dict[str, str]:
            url = "{}repositories/{}/tags".format(endpoint, name)
            resp = self._get(url, tokens)
            if resp.status_code == 404:
                raise NotFoundError("repository {} not found".format(name))
            if resp.status_code != 200:
                raise HTTPRequestError(
                    "HTTP code {} fetching tags from {}".format(
                        resp.status_code, endpoint
                    ),
                    resp,
                )
            result = resp.json()
            if isinstance(result, list):
                # Some registries answer with [{"name": ..., "layer": ...}].
                return {item["name"]: item["layer"] for item in result}
            return result

        tags = loop_endpoints(endpoints, _fetch)
        LOGGER.debug("Got %d tags for %s", len(tags), name)
        return tags

    def get_remote_history(
        self, img_id: str, endpoint: str, tokens: Optional[Sequence[str]] = None
    ) -> List[str]:
        """
        Returns the ancestry of an image, base layer first.
        """
        resp = self._get("{}images/{}/ancestry".format(endpoint, img_id), tokens)
        if resp.status_code == 401:
            raise UnauthorizedError("Authentication is required.")
        if resp.status_code == 404:
            raise NotFoundError("image {} not found".format(img_id))
        if resp.status_code != 200:
            raise HTTPRequestError(
                "Server error: {} trying to fetch remote history for {}".format(
                    resp.status_code, img_id
                ),
                resp,
            )
        # The registry lists the image itself first.
        return list(reversed(resp.json()))

    def lookup_remote_image(
        self, img_id: str, endpoint: str, tokens: Optional[Sequence[str]] = None
    ) -> None:
        """
        Raise NotFoundError unless the endpoint knows the image.
        """
        resp = self._get("{}images/{}/json".format(endpoint, img_id), tokens)
        resp.close()
        if resp.status_code == 404:
            raise NotFoundError("image {} not found".format(img_id))
        if resp.status_code != 200:
            raise HTTPRequestError("HTTP code {}".format(resp.status_code), resp)

    def get_remote_image_json(
        self, img_id: str, endpoint: str, tokens: Optional[Sequence[str]] = None
    ) -> Tuple[bytes, int]:
        """
        Returns an image's JSON metadata and its layer size (-1 if the
        registry did not report one).
        """
        resp = self._get("{}images/{}/json".format(endpoint, img_id), tokens)
        if resp.status_code == 404:
            raise NotFoundError("image {} not found".format(img_id))
        if resp.status_code != 200:
            raise HTTPRequestError("HTTP code {}".format(resp.status_code), resp)

        size = -1
        if resp.headers.get("X-Docker-Size"):
            try:
                size = int(resp.headers["X-Docker-Size"])
            except ValueError:
                raise RegistryException(
                    "invalid X-Docker-Size {!r}".format(resp.headers["X-Docker-Size"])
                )
        return resp.content, size

    def get_remote_image_layer(
        self,
        img_id: str,
        endpoint: str,
        tokens: Optional[Sequence[str]] = None,
        img_size: int = 0,
    ) -> BinaryIO:
        """
        Open a streaming reader over an image's layer tarball.
        """
        resp = self._get(
            "{}images/{}/layer".format(endpoint, img_id), tokens, stream=True
        )
        if resp.status_code != 200:
            resp.close()
            if resp.status_code == 404:
                raise NotFoundError("layer of image {} not found".format(img_id))
            raise HTTPRequestError(
                "Server error: Status {} while fetching image layer ({})".format(
                    resp.status_code, img_id
                ),
                resp,
            )
        LOGGER.debug("Streaming layer %s (%d bytes expected)", img_id, img_size)
        return resp.raw

    def search_repositories(self, term: str) -> SearchResults:
        """
        Query the index's search endpoint.
        """
        resp = self._get(self.index_url() + "search", params={"q": term})
        if resp.status_code != 200:
            raise HTTPRequestError(
                "Unexpected status code {}".format(resp.status_code), resp
            )
        return SearchResults.from_dict(resp.json())

    def push_image_json_registry(
        self,
        img_data: ImgData,
        json_raw: bytes,
        endpoint: str,
        tokens: Optional[Sequence[str]] = None,
    ) -> None:
        """
        Upload an image's JSON metadata to a registry endpoint.
        """
        url = "{}images/{}/json".format(endpoint, img_data.id)
        LOGGER.debug("[registry] Calling PUT %s", url)
        headers = self._token_headers(tokens)
        headers["Content-Type"] = "application/json"
        resp = self.client.put(url, data=json_raw, headers=headers)
        if resp.status_code == 401 and resp.text.startswith("Image already exists"):
            raise AlreadyExistsError("image {} already exists".format(img_data.id))
        if resp.status_code != 200:
            raise HTTPRequestError(
                "HTTP code {} while uploading metadata: {}".format(
                    resp.status_code, _error_body(resp)
                ),
                resp,
            )

    def push_image_layer_registry(
        self,
        img_id: str,
        layer: BinaryIO,
        endpoint: str,
        json_raw: bytes,
        tokens: Optional[Sequence[str]] = None,
    ) -> Tuple[str, str]:
        """
        Stream a layer tarball to a registry endpoint. Returns the checksum
        and checksum payload to register for it.

        No tarsum is computed. Both values are the same
        ``sha256(json_raw + b"\\n" + layer)`` digest, which registries
        accept as the checksum of a layer pushed this way.
        """
        url = "{}images/{}/layer".format(endpoint, img_id)
        LOGGER.debug("[registry] Calling PUT %s", url)
        payload_hash = hashlib.sha256(json_raw + b"\n")

        def _body():
            for chunk in iter(lambda: layer.read(CHUNK_SIZE), b""):
                payload_hash.update(chunk)
                yield chunk

        headers = self._token_headers(tokens)
        headers["Content-Type"] = "application/octet-stream"
        resp = self.client.put(url, data=_body(), headers=headers)
        if resp.status_code != 200:
            raise HTTPRequestError(
                "Received HTTP code {} while uploading layer: {}".format(
                    resp.status_code, _error_body(resp)
                ),
                resp,
            )

        checksum_payload = "sha256:" + payload_hash.hexdigest()
        return checksum_payload, checksum_payload

    def push_image_checksum_registry(
        self, img_data: ImgData, endpoint: str, tokens: Optional[Sequence[str]] = None
    ) -> None:
        """
        Register the checksum of a pushed layer.
        """
        url = "{}images/{}/checksum".format(endpoint, img_data.id)
        LOGGER.debug("[registry] Calling PUT %s", url)
        headers = self._token_headers(tokens)
        headers["X-Docker-Checksum"] = img_data.checksum
        headers["X-Docker-Checksum-Payload"] = img_data.checksum_payload
        resp = self.client.put(url, headers=headers)
        if resp.status_code != 200:
            error = _error_body(resp)
            if error == "Image already exists":
                raise AlreadyExistsError("image {} already exists".format(img_data.id))
            raise HTTPRequestError(
                "HTTP code {} while uploading metadata: {!r}".format(
                    resp.status_code, error
                ),
                resp,
            )

    def push_registry_tag(
        self,
        remote: str,
        revision: str,
        tag: str,
        endpoint: str,
        tokens: Optional[Sequence[str]] = None,
    ) -> None:
        """
        Point a tag of a repository at an image ID.
        """
        url = "{}repositories/{}/tags/{}".format(endpoint, remote, tag)
        LOGGER.debug("[registry] Calling PUT %s", url)
        headers = self._token_headers(tokens)
        headers["Content-Type"] = "application/json"
        resp = self.client.put(url, data=json.dumps(revision), headers=headers)
        if resp.status_code not in (200, 201):
            raise HTTPRequestError(
                "Internal server error: {} trying to push tag {} on {}".format(
                    resp.status_code, tag, remote
                ),
                resp,
            )

    def _put_index(
        self, url: str, data: bytes, headers: Mapping[str, str]
    ) -> requests.Response:
        """
        PUT to the index, following redirects ourselves so the method and
        body survive. Credentials only follow redirects between trusted
        locations.
        """
        origin_url = url
        headers = dict(headers)
        auth = None
        for _ in range(self.client.max_redirects):
            LOGGER.debug("[registry] Calling PUT %s", url)
            resp = self.client.put(
                url, data=data, headers=headers, allow_redirects=False, auth=auth
            )
            if resp.status_code != 302 or "Location" not in resp.headers:
                return resp
            resp.close()
            url = urllib.parse.urljoin(url, resp.headers["Location"])
            if not (trusted_location(url) and trusted_location(origin_url)):
                headers.pop("Authorization", None)
                auth = _no_auth
        raise RegistryException("too many redirects pushing to {}".format(origin_url))

    def push_image_json_index(
        self,
        remote: str,
        img_list: Sequence[ImgData],
        validate: bool,
        regs: Optional[Sequence[str]] = None,
    ) -> RepositoryData:
        """
        Register a repository's images with the index. The first call
        (validate=False) announces the images and returns the endpoints and
        tokens to push to; the second (validate=True) submits the checksums.
        """
        if validate:
            img_list = [img for img in img_list if img.checksum]
        data = json.dumps([img.to_dict() for img in img_list]).encode("utf-8")

        suffix = "images" if validate else ""
        url = "{}repositories/{}/{}".format(self.index_url(), remote, suffix)
        headers = {"Content-Type": "application/json", "X-Docker-Token": "true"}
        if validate and regs:
            headers["X-Docker-Endpoints"] = ",".join(regs)

        resp = self._put_index(url, data, headers)

        if validate:
            if resp.status_code != 204:
                raise HTTPRequestError(
                    "Error: Status {} trying to push checksums {}: {}".format(
                        resp.status_code, remote, _error_body(resp)
                    ),
                    resp,
                )
            return RepositoryData()

        if resp.status_code == 401:
            raise UnauthorizedError("Authentication is required.")
        if resp.status_code == 404:
            raise NotFoundError("repository {} not found".format(remote))
        if resp.status_code not in (200, 201):
            raise HTTPRequestError(
                "Error: Status {} trying to push repository {}: {}".format(
                    resp.status_code, remote, _error_body(resp)
                ),
                resp,
            )
        if not resp.headers.get("X-Docker-Token"):
            raise RegistryException("Index response didn't contain an access token")
        if "X-Docker-Endpoints" not in resp.headers:
            raise RegistryException("Index response didn't contain any endpoints")

        return RepositoryData(
            endpoints=build_endpoints_list(
                header_values(resp.headers, "X-Docker-Endpoints"), self.index_url()
            ),
            tokens=[resp.headers["X-Docker-Token"]],
        )
