"""
Tests for the distribution (v2) backend
"""
from collections import OrderedDict
import io
import json
from typing import List
import unittest
import urllib.parse

import requests

from dualregistry.digest import is_valid_digest, read_verified
from dualregistry.exceptions import (
    CorruptedBlobError,
    HTTPRequestError,
    ManifestInvalidError,
    NoSupportError,
    RegistryError,
    RegistryException,
    UnauthorizedError,
    continue_on_error,
)
from dualregistry.repository import FallbackRepository, Layer, Repository
from dualregistry.v2 import (
    SignedManifest,
    V2Client,
    V2Repository,
    check_valid_manifest,
)

from helpers import (
    REALM,
    UNAUTHORIZED_BODY,
    FakeAdapter,
    add_token_server,
    add_v2_image,
    blob_digest,
    fake_transport,
    make_response,
    schema1_manifest,
)

REGISTRY = "https://registry.example.com"
MIRROR = "https://mirror.example.com"
NAME = "team/app"
REPO_URL = "{}/v2/{}/".format(REGISTRY, NAME)
BLOBS = [b"top layer", b"middle layer", b"base layer"]


def _raw(content) -> bytes:
    return json.dumps(content).encode("utf-8")


class ManifestTest(unittest.TestCase):
    """
    Schema1 manifest parsing tests
    """

    def test_parse(self) -> None:
        """Test reading the layer and history lists"""
        manifest = SignedManifest(_raw(schema1_manifest(NAME, "latest", BLOBS)))
        self.assertEqual(manifest.schema_version, 1)
        self.assertEqual(manifest.name, NAME)
        self.assertEqual(manifest.tag, "latest")
        self.assertEqual(manifest.fs_layers, [blob_digest(blob) for blob in BLOBS])
        self.assertEqual(json.loads(manifest.history[2]), {"id": "layer2"})
        self.assertEqual(
            manifest.media_type(),
            "application/vnd.docker.distribution.manifest.v1+json",
        )

    def test_digest_ignores_signatures(self) -> None:
        """Test that signatures do not change the manifest digest"""
        content = OrderedDict(schema1_manifest(NAME, "latest", BLOBS))
        unsigned = SignedManifest(_raw(content))

        content["signatures"] = [{"header": {"alg": "ES256"}, "signature": "abc"}]
        signed = SignedManifest(_raw(content))

        self.assertTrue(is_valid_digest(unsigned.digest()))
        self.assertEqual(signed.digest(), unsigned.digest())
        self.assertEqual(
            signed.media_type(),
            "application/vnd.docker.distribution.manifest.v1+prettyjws",
        )
        self.assertNotIn(b"signatures", signed.serialize(strip_signature=True))
        self.assertIn(b"signatures", signed.serialize())

    def test_digest_from_response(self) -> None:
        """Test that the registry supplied digest is preferred"""
        request = requests.Request("GET", REPO_URL + "manifests/latest").prepare()
        resp = make_response(
            request,
            json_body=schema1_manifest(NAME, "latest", BLOBS),
            headers={"Docker-Content-Digest": "sha256:" + "a" * 64},
        )
        self.assertEqual(
            SignedManifest.from_response(resp).digest(), "sha256:" + "a" * 64
        )

    def test_invalid_documents(self) -> None:
        """Test that non-manifest documents are rejected"""
        with self.assertRaises(ManifestInvalidError):
            SignedManifest(b"{not json")
        with self.assertRaises(ManifestInvalidError):
            SignedManifest(b"[1, 2, 3]")

    def test_check_valid_manifest(self) -> None:
        """Test the structural manifest checks"""
        content = schema1_manifest(NAME, "latest", BLOBS)
        check_valid_manifest(SignedManifest(_raw(content)))

        content["history"].pop()
        with self.assertRaisesRegex(ManifestInvalidError, "length of history"):
            check_valid_manifest(SignedManifest(_raw(content)))

        with self.assertRaisesRegex(ManifestInvalidError, "no FSLayers"):
            check_valid_manifest(
                SignedManifest(_raw(schema1_manifest(NAME, "latest", [])))
            )

    def test_malformed_entries(self) -> None:
        """Test that badly shaped layer and history entries are rejected"""
        for key, value in (
            ("fsLayers", [{}]),
            ("fsLayers", [{"digest": "sha256:" + "a" * 64}]),
            ("fsLayers", {"blobSum": "sha256:" + "a" * 64}),
            ("history", ["not an object"]),
            ("history", [{"v1Compatibility": 7}]),
        ):
            content = schema1_manifest(NAME, "latest", [b"only layer"])
            content[key] = value
            with self.assertRaises(ManifestInvalidError, msg=repr(value)):
                check_valid_manifest(SignedManifest(_raw(content)))


class LegacyRepository(Repository):
    """
    Stand-in for the legacy backend behind a distribution repository.
    """

    def __init__(self) -> None:
        self.calls = 0

    def name(self) -> str:
        return NAME

    def tags(self) -> List[str]:
        self.calls += 1
        return ["legacy"]

    def layers(self, tag: str) -> List[Layer]:
        self.calls += 1
        return []


class V2TestCase(unittest.TestCase):
    """
    Shared fixture for v2 backend tests
    """

    def setUp(self) -> None:
        self.adapter = FakeAdapter()
        self.transport = fake_transport(self.adapter)
        self.client = V2Client(self.transport, NAME, REGISTRY)
        self.repo = V2Repository(NAME, self.client)

    def blob_requests(self):
        return [r for r in self.adapter.requests if "/blobs/" in r.url]


class V2RepositoryTest(V2TestCase):
    """
    Tag and layer listing tests
    """

    def test_tags(self) -> None:
        """Test listing tags"""
        add_v2_image(self.adapter, REGISTRY, NAME, "latest", BLOBS)
        self.assertEqual(self.repo.tags(), ["latest"])
        self.assertEqual(self.repo.name(), NAME)

    def test_layers(self) -> None:
        """Test that a valid manifest yields its layers in order"""
        manifest = add_v2_image(self.adapter, REGISTRY, NAME, "latest", BLOBS)

        with self.assertLogs("dualregistry.v2", level="INFO") as logs:
            layers = self.repo.layers("latest")
        self.assertIn("team/app:latest has been verified", logs.output[0])

        self.assertEqual(len(layers), len(BLOBS))
        self.assertEqual(
            [layer.digest() for layer in layers], [blob_digest(b) for b in BLOBS]
        )
        self.assertEqual(
            [layer.v1_json() for layer in layers],
            [h["v1Compatibility"].encode("utf-8") for h in manifest["history"]],
        )
        self.assertEqual(
            self.adapter.requests[0].headers["Accept"],
            ", ".join(SignedManifest.MEDIA_TYPES),
        )
        self.assertEqual(self.blob_requests(), [])

    def test_mismatched_manifest(self) -> None:
        """Test that a manifest with missing history is rejected up front"""
        manifest = schema1_manifest(NAME, "latest", BLOBS)
        manifest["history"].pop()
        add_v2_image(self.adapter, REGISTRY, NAME, "latest", BLOBS, manifest=manifest)

        with self.assertRaises(ManifestInvalidError):
            self.repo.layers("latest")
        self.assertEqual(self.blob_requests(), [])

    def test_malformed_manifest_falls_back(self) -> None:
        """Test that a malformed manifest lets the legacy backend answer"""
        manifest = schema1_manifest(NAME, "latest", BLOBS)
        manifest["fsLayers"] = [{}]
        manifest["history"] = manifest["history"][:1]
        add_v2_image(self.adapter, REGISTRY, NAME, "latest", BLOBS, manifest=manifest)

        with self.assertRaises(ManifestInvalidError):
            self.repo.layers("latest")

        legacy = LegacyRepository()
        composite = FallbackRepository([self.repo, legacy])
        self.assertEqual(composite.layers("latest"), [])
        self.assertEqual(legacy.calls, 1)
        self.assertEqual(self.blob_requests(), [])

    def test_malformed_tag_list(self) -> None:
        """Test that a tag list that is not an object is rejected"""
        for body in ([1, 2], {"tags": "latest"}, {"tags": [1]}):
            self.adapter.reply("GET", REPO_URL + "tags/list", json_body=body)
            with self.assertRaisesRegex(RegistryException, "malformed tag list"):
                self.repo.tags()

        self.adapter.reply("GET", REPO_URL + "tags/list", json_body={"tags": None})
        self.assertEqual(self.repo.tags(), [])

        legacy = LegacyRepository()
        self.adapter.reply("GET", REPO_URL + "tags/list", json_body=["latest"])
        composite = FallbackRepository([self.repo, legacy])
        self.assertEqual(composite.tags(), ["legacy"])

    def test_unauthorized(self) -> None:
        """Test that distribution auth errors surface as UnauthorizedError"""
        self.adapter.reply(
            "GET", REPO_URL + "tags/list", 401, json_body=UNAUTHORIZED_BODY
        )
        self.adapter.reply(
            "GET", REPO_URL + "manifests/latest", 401, json_body=UNAUTHORIZED_BODY
        )
        with self.assertRaises(UnauthorizedError):
            self.repo.tags()
        with self.assertRaises(UnauthorizedError):
            self.repo.layers("latest")

    def test_unsupported_operation(self) -> None:
        """Test that UNSUPPORTED codes and 405 surface as NoSupportError"""
        self.adapter.reply(
            "GET",
            REPO_URL + "tags/list",
            400,
            json_body={"errors": [{"code": "UNSUPPORTED", "message": "nope"}]},
        )
        self.adapter.reply("GET", REPO_URL + "manifests/latest", 405)

        with self.assertRaises(NoSupportError) as ctx:
            self.repo.tags()
        self.assertEqual(ctx.exception.err.errors[0].code, "UNSUPPORTED")
        with self.assertRaises(NoSupportError) as ctx:
            self.repo.layers("latest")
        self.assertEqual(ctx.exception.err.status_code, 405)

    def test_unsupported_schema(self) -> None:
        """Test that schema2 manifests are rejected"""
        manifest = schema1_manifest(NAME, "latest", BLOBS)
        manifest["schemaVersion"] = 2
        add_v2_image(self.adapter, REGISTRY, NAME, "latest", BLOBS, manifest=manifest)

        with self.assertRaisesRegex(ManifestInvalidError, "version\\(2\\)"):
            self.repo.layers("latest")

    def test_manifest_unknown(self) -> None:
        """Test that an unknown manifest allows falling back"""
        self.adapter.reply(
            "GET",
            REPO_URL + "manifests/missing",
            404,
            json_body={"errors": [{"code": "MANIFEST_UNKNOWN", "message": "no"}]},
        )
        with self.assertRaises(RegistryError) as ctx:
            self.repo.layers("missing")
        self.assertTrue(ctx.exception.fallback)
        self.assertTrue(continue_on_error(ctx.exception))

    def test_name_unknown(self) -> None:
        """Test that an unknown repository is terminal"""
        self.adapter.reply(
            "GET",
            REPO_URL + "manifests/latest",
            404,
            json_body={"errors": [{"code": "NAME_UNKNOWN", "message": "no"}]},
        )
        with self.assertRaises(RegistryError) as ctx:
            self.repo.layers("latest")
        self.assertFalse(ctx.exception.fallback)

    def test_bearer_protected(self) -> None:
        """Test that a registry demanding a token is authenticated against"""
        add_v2_image(self.adapter, REGISTRY, NAME, "latest", BLOBS, protected=True)
        add_token_server(self.adapter)

        self.assertEqual(self.repo.tags(), ["latest"])
        self.assertEqual(len(self.repo.layers("latest")), len(BLOBS))

        token_requests = self.adapter.sent("GET", REALM)
        self.assertEqual(len(token_requests), 1)
        query = urllib.parse.parse_qs(
            urllib.parse.urlparse(token_requests[0].url).query
        )
        self.assertEqual(query["scope"], ["repository:team/app:pull"])


class V2LayerTest(V2TestCase):
    """
    Blob fetch and verification tests
    """

    def setUp(self) -> None:
        super().setUp()
        add_v2_image(self.adapter, REGISTRY, NAME, "latest", BLOBS)
        self.layers = self.repo.layers("latest")

    def test_fetch_verified(self) -> None:
        """Test fetching a layer whose content matches its digest"""
        blob, size, verify = self.layers[0].fetch()
        self.assertEqual(size, len(BLOBS[0]))
        self.assertEqual(read_verified(blob, verify), BLOBS[0])
        self.assertTrue(verify())

    def test_fetch_corrupted(self) -> None:
        """Test that tampered content fails verification"""
        url = REPO_URL + "blobs/" + blob_digest(BLOBS[1])
        self.adapter.reply("GET", url, body=b"tampered!!!!")

        layer = self.layers[1]
        blob, _, verify = layer.fetch()
        with self.assertRaises(CorruptedBlobError):
            read_verified(blob, verify, layer.digest())
        self.assertFalse(verify())

    def test_fetch_without_size(self) -> None:
        """Test that a blob without a size fails before any download"""
        url = REPO_URL + "blobs/" + blob_digest(BLOBS[2])
        self.adapter.reply("HEAD", url, 200)

        with self.assertRaisesRegex(RegistryException, "did not return a size"):
            self.layers[2].fetch()
        self.assertEqual(self.adapter.sent("GET", url), [])
        self.assertEqual(len(self.adapter.sent("HEAD", url)), 1)

    def test_ranged_read(self) -> None:
        """Test that seeking requests the remainder of the blob"""
        blob = self.client.open_blob(blob_digest(BLOBS[0]))
        self.assertEqual(blob.size, len(BLOBS[0]))
        self.assertEqual(blob.seek(4), 4)
        self.assertEqual(blob.read(), BLOBS[0][4:])
        self.assertEqual(blob.tell(), len(BLOBS[0]))
        self.assertEqual(blob.read(), b"")

        gets = self.adapter.sent("GET", REPO_URL + "blobs/" + blob_digest(BLOBS[0]))
        self.assertEqual(len(gets), 1)
        self.assertEqual(gets[0].headers["Range"], "bytes=4-")
        blob.close()

    def test_range_ignored(self) -> None:
        """Test reading from an offset when the server ignores Range"""
        url = REPO_URL + "blobs/" + blob_digest(BLOBS[0])
        self.adapter.reply("GET", url, body=BLOBS[0])

        blob = self.client.open_blob(blob_digest(BLOBS[0]))
        blob.seek(-5, io.SEEK_END)
        self.assertEqual(blob.read(), BLOBS[0][-5:])

    def test_seek_validation(self) -> None:
        """Test seek bookkeeping and bad arguments"""
        blob = self.client.open_blob(blob_digest(BLOBS[0]))
        self.assertEqual(blob.seek(0, io.SEEK_END), len(BLOBS[0]))
        self.assertEqual(blob.seek(-2, io.SEEK_CUR), len(BLOBS[0]) - 2)
        with self.assertRaises(ValueError):
            blob.seek(-1)
        with self.assertRaises(ValueError):
            blob.seek(0, 7)
        self.assertEqual(self.adapter.sent("GET", blob.url), [])

    def test_blob_read_error(self) -> None:
        """Test that a failed blob download raises"""
        url = REPO_URL + "blobs/" + blob_digest(BLOBS[0])
        self.adapter.reply("GET", url, 500)
        blob = self.client.open_blob(blob_digest(BLOBS[0]))
        with self.assertRaises(HTTPRequestError):
            blob.read()


class V2MirrorTest(unittest.TestCase):
    """
    Mirror fallback tests
    """

    def setUp(self) -> None:
        self.adapter = FakeAdapter()
        self.transport = fake_transport(self.adapter)
        add_v2_image(self.adapter, REGISTRY, NAME, "latest", BLOBS)

    def test_mirror_miss(self) -> None:
        """Test that a repository missing from the mirror is read upstream"""
        client = V2Client(self.transport, NAME, REGISTRY, mirrors=[MIRROR + "/"])
        self.assertEqual(client.base_urls, [MIRROR, REGISTRY])

        self.assertEqual(client.tags(), ["latest"])
        self.assertEqual(
            [r.url for r in self.adapter.requests],
            [MIRROR + "/v2/team/app/tags/list", REPO_URL + "tags/list"],
        )

    def test_mirror_hit(self) -> None:
        """Test that the mirror is used when it has the repository"""
        add_v2_image(self.adapter, MIRROR, NAME, "cached", [b"cached"])
        client = V2Client(self.transport, NAME, REGISTRY, mirrors=[MIRROR])
        self.assertEqual(client.tags(), ["cached"])
        self.assertEqual(len(self.adapter.requests), 1)

    def test_mirror_unreachable(self) -> None:
        """Test that connection failures move on to the next URL"""

        def _refuse(request):
            raise requests.ConnectionError("connection refused")

        self.adapter.add("GET", MIRROR + "/v2/team/app/tags/list", _refuse)
        client = V2Client(self.transport, NAME, REGISTRY, mirrors=[MIRROR])
        self.assertEqual(client.tags(), ["latest"])

    def test_mirror_server_error(self) -> None:
        """Test that a server error from the mirror is terminal"""
        self.adapter.reply("GET", MIRROR + "/v2/team/app/tags/list", 503)
        client = V2Client(self.transport, NAME, REGISTRY, mirrors=[MIRROR])
        with self.assertRaises(HTTPRequestError):
            client.tags()
        self.assertEqual(len(self.adapter.requests), 1)

    def test_mirror_token_rejected(self) -> None:
        """Test that a mirror whose token server refuses us is skipped"""
        mirror_realm = "https://mirror-auth.example.com/token"
        self.adapter.reply(
            "GET",
            MIRROR + "/v2/team/app/tags/list",
            401,
            headers={"WWW-Authenticate": 'Bearer realm="{}"'.format(mirror_realm)},
            json_body=UNAUTHORIZED_BODY,
        )
        self.adapter.reply("GET", mirror_realm, 401)
        client = V2Client(self.transport, NAME, REGISTRY, mirrors=[MIRROR])

        self.assertEqual(client.tags(), ["latest"])
        self.assertEqual(
            [r.url.split("?")[0] for r in self.adapter.requests],
            [MIRROR + "/v2/team/app/tags/list", mirror_realm, REPO_URL + "tags/list"],
        )

    def test_push_skips_mirrors(self) -> None:
        """Test that mirrors are never used for pushes"""
        client = V2Client(
            self.transport, NAME, REGISTRY, action="push", mirrors=[MIRROR]
        )
        self.assertEqual(client.base_urls, [REGISTRY])
        self.assertEqual(str(client.authorizer.scope), "repository:team/app:push,pull")

    def test_all_urls_missing(self) -> None:
        """Test the error raised when no URL has the repository"""
        client = V2Client(self.transport, "other/app", REGISTRY, mirrors=[MIRROR])
        with self.assertRaises(RegistryException):
            client.tags()
        self.assertEqual(len(self.adapter.requests), 2)
