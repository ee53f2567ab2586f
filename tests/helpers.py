"""
In-process HTTP fakes shared by the tests.

FakeAdapter is mounted through Transport(adapter=...) so sessions, redirects
and auth hooks all run through the real requests machinery.
"""
import hashlib
import io
import json
import re
from typing import Callable, Dict, List, Optional, Tuple

import requests
from requests.adapters import BaseAdapter
from requests.structures import CaseInsensitiveDict

from dualregistry.transport import Transport

Handler = Callable[[requests.PreparedRequest], requests.Response]

TOKEN = "s3cr3t-token"
REALM = "https://auth.docker.io/token"
CHALLENGE = 'Bearer realm="{}",service="registry.docker.io"'.format(REALM)
UNAUTHORIZED_BODY = {
    "errors": [{"code": "UNAUTHORIZED", "message": "authentication required"}]
}
V2_HEADERS = {"Docker-Distribution-API-Version": "registry/2.0"}


def make_response(
    request: requests.PreparedRequest,
    status: int = 200,
    body=b"",
    headers: Optional[Dict[str, str]] = None,
    json_body=None,
) -> requests.Response:
    """
    Build a response the way HTTPAdapter.build_response would.
    """
    headers = dict(headers or {})
    if json_body is not None:
        body = json.dumps(json_body)
        headers.setdefault("Content-Type", "application/json")
    if isinstance(body, str):
        body = body.encode("utf-8")

    resp = requests.Response()
    resp.status_code = status
    resp.reason = "Fake"
    resp.headers = CaseInsensitiveDict(headers)
    resp.raw = io.BytesIO(body)
    resp.encoding = "utf-8"
    resp.url = request.url
    resp.request = request
    return resp


def responder(status=200, body=b"", headers=None, json_body=None) -> Handler:
    """
    Returns a handler always answering with the given response.
    """

    def _handle(request):
        return make_response(request, status, body, headers, json_body)

    return _handle


def bearer_protected(handler: Handler, token: str = TOKEN) -> Handler:
    """
    Wrap handler so it demands a bearer token first.
    """

    def _handle(request):
        if request.headers.get("Authorization") != "Bearer " + token:
            return make_response(
                request,
                401,
                headers={"WWW-Authenticate": CHALLENGE},
                json_body=UNAUTHORIZED_BODY,
            )
        return handler(request)

    return _handle


class FakeAdapter(BaseAdapter):
    """
    Routes requests by (method, url) to handlers and records what was sent.
    Routes registered without a query string match any query string.
    Unrouted requests get a 404.
    """

    def __init__(self) -> None:
        super().__init__()
        self.routes: Dict[Tuple[str, str], Handler] = {}
        self.requests: List[requests.PreparedRequest] = []
        self.bodies: List[bytes] = []

    def add(self, method: str, url: str, handler: Handler) -> None:
        self.routes[(method, url)] = handler

    def reply(self, method: str, url: str, *args, **kwargs) -> None:
        self.add(method, url, responder(*args, **kwargs))

    def send(  # type: ignore
        self, request, stream=False, timeout=None, verify=True, cert=None, proxies=None
    ):
        body = request.body
        if body is None:
            body = b""
        elif isinstance(body, str):
            body = body.encode("utf-8")
        elif not isinstance(body, bytes):
            body = b"".join(body)
        self.requests.append(request)
        self.bodies.append(body)

        handler = self.routes.get((request.method, request.url))
        if handler is None:
            handler = self.routes.get((request.method, request.url.split("?")[0]))
        if handler is None:
            return make_response(request, 404)
        return handler(request)

    def close(self) -> None:
        pass

    def sent(self, method: str, url: str) -> List[requests.PreparedRequest]:
        """
        Returns the recorded requests to url, ignoring query strings.
        """
        return [
            request
            for request in self.requests
            if request.method == method and request.url.split("?")[0] == url
        ]


def fake_transport(adapter: Optional[FakeAdapter] = None) -> Transport:
    return Transport(adapter=adapter or FakeAdapter(), user_agent="docker/test")


def add_token_server(adapter: FakeAdapter, token: str = TOKEN) -> None:
    adapter.reply("GET", REALM, json_body={"token": token})


def blob_digest(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


def schema1_manifest(name: str, tag: str, blobs: List[bytes]) -> Dict:
    """
    Build an unsigned schema1 manifest listing blobs, most recent first.
    """
    return {
        "schemaVersion": 1,
        "name": name,
        "tag": tag,
        "architecture": "amd64",
        "fsLayers": [{"blobSum": blob_digest(blob)} for blob in blobs],
        "history": [
            {"v1Compatibility": json.dumps({"id": "layer{}".format(i)})}
            for i in range(len(blobs))
        ],
    }


def ranged_blob(data: bytes) -> Handler:
    """
    Returns a handler serving data, honoring open ended Range requests.
    """

    def _handle(request):
        match = re.match(r"bytes=(\d+)-$", request.headers.get("Range", ""))
        if match:
            return make_response(request, 206, data[int(match.group(1)) :])
        return make_response(request, 200, data)

    return _handle


def add_v2_image(
    adapter: FakeAdapter,
    base_url: str,
    name: str,
    tag: str,
    blobs: List[bytes],
    manifest: Optional[Dict] = None,
    protected: bool = False,
) -> Dict:
    """
    Serve a repository holding a single tag from a fake distribution registry.
    """

    def wrap(handler: Handler) -> Handler:
        return bearer_protected(handler) if protected else handler

    repo_url = "{}/v2/{}/".format(base_url, name)
    if manifest is None:
        manifest = schema1_manifest(name, tag, blobs)
    adapter.add(
        "GET",
        repo_url + "tags/list",
        wrap(responder(json_body={"name": name, "tags": [tag]})),
    )
    adapter.add(
        "GET", repo_url + "manifests/" + tag, wrap(responder(json_body=manifest))
    )
    for blob in blobs:
        url = repo_url + "blobs/" + blob_digest(blob)
        size = {"Content-Length": str(len(blob))}
        adapter.add("HEAD", url, wrap(responder(headers=size)))
        adapter.add("GET", url, wrap(ranged_blob(blob)))
    return manifest
