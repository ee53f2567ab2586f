"""
Module implementing the distribution (v2) protocol backend.

See https://docs.docker.com/registry/spec/api/
"""
from collections import OrderedDict
import hashlib
import io
import json
import logging
from typing import List, Optional, Sequence, Tuple

import requests

from .auth import TokenAuthorizer, TokenScope
from .digest import DigestVerifier, VerifyingReader
from .exceptions import (
    ERROR_CODE_UNSUPPORTED,
    HTTPRequestError,
    ManifestInvalidError,
    NoSupportError,
    NotFoundError,
    RegistryException,
    UnauthorizedError,
    continue_on_error,
    decode_v2_errors,
    translate_v2_auth_error,
    wrap_error,
)
from .repository import CommonRepository, FetchResult, Layer
from .transport import MetaHeaders, Transport
from .types import AuthConfig

LOGGER = logging.getLogger(__name__)


class SignedManifest:
    """
    Represents the schema1 manifest.

    See https://docs.docker.com/registry/spec/manifest-v2-1/
    """

    MEDIA_TYPES = (
        "application/vnd.docker.distribution.manifest.v1+prettyjws",
        "application/vnd.docker.distribution.manifest.v1+json",
    )

    def __init__(self, raw: bytes, digest: Optional[str] = None) -> None:
        self.raw = raw
        try:
            self.content = json.loads(
                raw.decode("utf-8"), object_pairs_hook=OrderedDict
            )
        except ValueError as exc:
            raise ManifestInvalidError("could not decode manifest: {}".format(exc))
        if not isinstance(self.content, dict):
            raise ManifestInvalidError("manifest is not a JSON object")
        self._digest = digest

    @classmethod
    def from_response(cls, response: requests.Response) -> "SignedManifest":
        """
        Build a manifest from a response, keeping the digest the registry
        reported in Docker-Content-Digest.
        """
        return cls(response.content, response.headers.get("Docker-Content-Digest"))

    @property
    def schema_version(self) -> int:
        """Returns the schemaVersion field, or 0 when missing."""
        return self.content.get("schemaVersion", 0)

    @property
    def name(self) -> str:
        return self.content.get("name", "")

    @property
    def tag(self) -> str:
        return self.content.get("tag", "")

    def _entries(self, key: str, field: str) -> List[str]:
        """
        Returns field from each object in the key list. Raises
        ManifestInvalidError if the list or any of its entries is malformed.
        """
        entries = self.content.get(key) or []
        if not isinstance(entries, list):
            raise ManifestInvalidError("{} in manifest is not a list".format(key))
        values = []
        for entry in entries:
            value = entry.get(field) if isinstance(entry, dict) else None
            if not isinstance(value, str):
                raise ManifestInvalidError(
                    "invalid {} entry in manifest: {!r}".format(key, entry)
                )
            values.append(value)
        return values

    @property
    def fs_layers(self) -> List[str]:
        """
        Returns the blob digests of the layers, most recent first.
        """
        return self._entries("fsLayers", "blobSum")

    @property
    def history(self) -> List[str]:
        """
        Returns the v1 compatibility JSON of each layer, parallel to fs_layers.
        """
        return self._entries("history", "v1Compatibility")

    def serialize(self, strip_signature=False) -> bytes:
        """
        Serialize the manifest into its canonical form.
        """
        hash_content = self.content
        if strip_signature and "signatures" in hash_content:
            hash_content = OrderedDict(hash_content)
            del hash_content["signatures"]

        return json.dumps(hash_content, indent=3, separators=(",", ": ")).encode(
            "UTF-8"
        )

    def digest(self) -> str:
        """
        Return the digest of the manifest in HASHALG:HASH format.
        """
        if self._digest is None:
            h = hashlib.sha256()
            h.update(self.serialize(strip_signature=True))
            self._digest = "sha256:" + h.hexdigest()
        return self._digest

    def media_type(self) -> str:
        """
        Returns the media type of this manifest. This depends on whether the
        "signatures" payload is present.
        """
        if "signatures" in self.content:
            return self.MEDIA_TYPES[0]
        return self.MEDIA_TYPES[1]


def check_valid_manifest(manifest: SignedManifest) -> None:
    """
    Reject manifests whose layer and history lists disagree or are empty.
    """
    if len(manifest.fs_layers) != len(manifest.history):
        raise ManifestInvalidError("length of history not equal to number of layers")
    if not manifest.fs_layers:
        raise ManifestInvalidError("no FSLayers in manifest")


class V2Client:
    """
    Client for one repository on a distribution registry.

    Requests go to each base URL in turn (mirrors first, and only for pulls)
    until one answers or fails in a way another one would not fix.
    """

    def __init__(
        self,
        transport: Transport,
        name: str,
        url: str,
        action: str = "pull",
        auth_config: Optional[AuthConfig] = None,
        meta_headers: Optional[MetaHeaders] = None,
        mirrors: Sequence[str] = (),
        secure: bool = True,
    ) -> None:
        self.name = name
        base_urls = list(mirrors) if action == "pull" else []
        base_urls.append(url)
        self.base_urls = [base_url.rstrip("/") for base_url in base_urls]
        self.session = transport.new_session(meta_headers, secure=secure)
        self.authorizer = TokenAuthorizer(
            self.session, auth_config, TokenScope.for_action(name, action)
        )

    def url(self, base_url: str, path: str) -> str:
        """
        Returns the URL of path within this repository on base_url.
        """
        return "{}/v2/{}/{}".format(base_url, self.name, path)

    def request(
        self, path: str, method: str = "GET", **kwargs
    ) -> Tuple[str, requests.Response]:
        """
        Returns the URL that answered and its successful response.

        Distribution UNAUTHORIZED errors are raised as UnauthorizedError and
        UNSUPPORTED errors or a 405 as NoSupportError.
        """
        last_error: Exception = RegistryException("no registry URLs configured")
        for base_url in self.base_urls:
            url = self.url(base_url, path)
            try:
                resp = self.authorizer.request(url, method=method, **kwargs)
            except (RegistryException, requests.RequestException) as exc:
                LOGGER.debug("%s %s failed: %s", method, url, exc)
                if not continue_on_error(exc):
                    raise
                last_error = exc
                continue

            if resp.status_code < 300:
                return url, resp

            err = self._response_error(resp, path, base_url)
            resp.close()
            LOGGER.debug("%s %s failed: %s", method, url, err)
            last_error = err
            if not (continue_on_error(err) or isinstance(err, NotFoundError)):
                raise translate_v2_auth_error(err)
        raise translate_v2_auth_error(last_error)

    @staticmethod
    def _response_error(
        resp: requests.Response, path: str, base_url: str
    ) -> Exception:
        v2_errors = decode_v2_errors(resp)
        if v2_errors is not None:
            if any(e.code == ERROR_CODE_UNSUPPORTED for e in v2_errors.errors):
                return NoSupportError(v2_errors)
            return v2_errors
        if resp.status_code == 404:
            return NotFoundError("{} not found at {}".format(path, base_url))
        err = HTTPRequestError(
            "HTTP code {} from {}".format(resp.status_code, resp.url), resp
        )
        if resp.status_code == 405:
            return NoSupportError(err)
        return err

    def tags(self) -> List[str]:
        """
        Returns the tags listed by the first registry that has the repository.
        """
        url, resp = self.request("tags/list")
        try:
            body = resp.json()
        except ValueError:
            body = None
        tags = body.get("tags") if isinstance(body, dict) else None
        if tags is None and isinstance(body, dict):
            return []
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            raise RegistryException("malformed tag list from " + url)
        return tags

    def get_manifest(self, tag: str) -> SignedManifest:
        """
        Fetch the schema1 manifest of tag.
        """
        _, resp = self.request(
            "manifests/" + tag,
            headers={"Accept": ", ".join(SignedManifest.MEDIA_TYPES)},
        )
        return SignedManifest.from_response(resp)

    def open_blob(self, dgst: str) -> "HTTPReadSeeker":
        """
        Locate a blob and return a seekable reader over it. Only a HEAD
        request is made until the reader is read from.
        """
        url, resp = self.request("blobs/" + dgst, method="HEAD")
        size = int(resp.headers.get("Content-Length") or 0)
        return HTTPReadSeeker(self.authorizer, url, size)


class HTTPReadSeeker:
    """
    Seekable reader over a blob of known size. Content is requested lazily
    with a ranged GET starting at the current offset.
    """

    def __init__(self, authorizer: TokenAuthorizer, url: str, size: int) -> None:
        self.authorizer = authorizer
        self.url = url
        self.size = size
        self._offset = 0
        self._resp: Optional[requests.Response] = None

    def _open(self) -> requests.Response:
        headers = {}
        if self._offset:
            headers["Range"] = "bytes={}-".format(self._offset)
        resp = self.authorizer.get(self.url, headers=headers, stream=True)
        if resp.status_code not in (200, 206):
            resp.close()
            raise HTTPRequestError(
                "HTTP code {} reading blob {}".format(resp.status_code, self.url), resp
            )
        if resp.status_code == 200 and self._offset:
            # Range was ignored, skip to the offset ourselves.
            resp.raw.read(self._offset)
        return resp

    def read(self, size: int = -1) -> bytes:
        if self._offset >= self.size:
            return b""
        if self._resp is None:
            self._resp = self._open()
        data = self._resp.raw.read(None if size is None or size < 0 else size)
        self._offset += len(data)
        return data

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        if whence == io.SEEK_SET:
            target = offset
        elif whence == io.SEEK_CUR:
            target = self._offset + offset
        elif whence == io.SEEK_END:
            target = self.size + offset
        else:
            raise ValueError("invalid whence ({})".format(whence))
        if target < 0:
            raise ValueError("negative seek position {}".format(target))
        if target != self._offset and self._resp is not None:
            self._resp.close()
            self._resp = None
        self._offset = target
        return self._offset

    def tell(self) -> int:
        return self._offset

    def close(self) -> None:
        if self._resp is not None:
            self._resp.close()
            self._resp = None


class V2Repository(CommonRepository):
    """
    A repository served over the distribution protocol.
    """

    def __init__(
        self,
        name: str,
        client: V2Client,
        action: str = "pull",
        meta_headers: Optional[MetaHeaders] = None,
        auth_config: Optional[AuthConfig] = None,
    ) -> None:
        super().__init__(name, action, meta_headers, auth_config)
        self.client = client

    def tags(self) -> List[str]:
        """
        Returns the tags of the repository.
        """
        return self.client.tags()

    def layers(self, tag: str) -> List[Layer]:
        """
        Fetch and check the schema1 manifest of tag and return its layers,
        most recent first.

        Authorization and unsupported-operation errors propagate unchanged so
        callers can tell them apart. Other failures, including a malformed
        manifest, are raised as RegistryException and let a composite
        repository move on to the next protocol.
        """
        try:
            manifest = self.client.get_manifest(tag)
        except (UnauthorizedError, NoSupportError):
            raise
        except (RegistryException, requests.RequestException) as exc:
            raise wrap_error("error getting image manifest", exc)

        if manifest.schema_version != 1:
            raise ManifestInvalidError(
                "unsupported image manifest version({}) for tag: {}".format(
                    manifest.schema_version, tag
                )
            )
        check_valid_manifest(manifest)
        LOGGER.info("Image manifest for %s:%s has been verified", self.name(), tag)

        return [
            V2Layer(self.client, blob_sum, v1_compatibility)
            for blob_sum, v1_compatibility in zip(manifest.fs_layers, manifest.history)
        ]


class V2Layer(Layer):
    """
    A content addressed layer from a schema1 manifest.
    """

    def __init__(self, client: V2Client, blob_sum: str, v1_compatibility: str) -> None:
        self.client = client
        self.blob_sum = blob_sum
        self.v1_compatibility = v1_compatibility

    def __repr__(self) -> str:
        return "V2Layer({!r})".format(self.blob_sum)

    def digest(self) -> str:
        return self.blob_sum

    def v1_json(self) -> bytes:
        return self.v1_compatibility.encode("utf-8")

    def fetch(self) -> FetchResult:
        """
        Open the blob behind this layer. The returned reader feeds a digest
        verifier as it is read; verify() reports whether the drained content
        matched the layer digest.
        """
        blob = self.client.open_blob(self.blob_sum)
        size = blob.seek(0, io.SEEK_END)
        if size == 0:
            blob.close()
            raise RegistryException("layer did not return a size: " + self.blob_sum)
        blob.seek(0, io.SEEK_SET)

        verifier = DigestVerifier(self.blob_sum)
        return VerifyingReader(blob, verifier), size, verifier.verified
