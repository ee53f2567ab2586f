"""
Tests for the dualregistry.types module
"""
import base64
import json
import unittest

from dualregistry.exceptions import RegistryException
from dualregistry.types import (
    APIVersion,
    AuthConfig,
    ImgData,
    IndexInfo,
    SearchResults,
    decode_auth_header,
    encode_auth_header,
)


class AuthConfigTest(unittest.TestCase):
    """
    AuthConfig and X-Registry-Auth tests
    """

    def test_dict_round_trip(self) -> None:
        """Test the engine JSON field names"""
        auth = AuthConfig(
            username="user",
            password="pass",
            server_address="https://index.docker.io/v1/",
            identity_token="tok",
        )
        data = auth.to_dict()
        self.assertEqual(data["serveraddress"], "https://index.docker.io/v1/")
        self.assertEqual(data["identitytoken"], "tok")
        self.assertNotIn("email", data)
        self.assertEqual(AuthConfig.from_dict(data), auth)

    def test_basic(self) -> None:
        """Test basic credential extraction"""
        self.assertEqual(AuthConfig("user", "pass").basic(), ("user", "pass"))
        self.assertIsNone(AuthConfig().basic())
        self.assertFalse(AuthConfig().has_credentials())
        self.assertTrue(AuthConfig(identity_token="tok").has_credentials())

    def test_auth_header(self) -> None:
        """Test encoding and decoding the X-Registry-Auth header"""
        auth = AuthConfig("user", "p@ss/word+=", server_address="registry.example.com")
        self.assertEqual(decode_auth_header(encode_auth_header(auth)), auth)

    def test_auth_header_without_padding(self) -> None:
        """Test that clients stripping base64 padding are accepted"""
        raw = json.dumps({"username": "ab"}).encode("utf-8")
        value = base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")
        self.assertEqual(decode_auth_header(value).username, "ab")

    def test_invalid_auth_header(self) -> None:
        """Test that garbage headers are rejected"""
        with self.assertRaises(RegistryException):
            decode_auth_header("!!!not base64!!!")
        with self.assertRaises(RegistryException):
            decode_auth_header(base64.urlsafe_b64encode(b"[1, 2]").decode("ascii"))


class WireTypesTest(unittest.TestCase):
    """
    Legacy wire record tests
    """

    def test_img_data(self) -> None:
        """Test the wire form of ImgData"""
        img = ImgData("abc", checksum="sha256:00", checksum_payload="p", tag="latest")
        self.assertEqual(
            img.to_dict(), {"id": "abc", "checksum": "sha256:00", "Tag": "latest"}
        )
        self.assertEqual(ImgData("abc").to_dict(), {"id": "abc"})

        parsed = ImgData.from_dict({"id": "def", "checksum": "sha256:11"})
        self.assertEqual(parsed.id, "def")
        self.assertEqual(parsed.checksum, "sha256:11")
        self.assertEqual(parsed.tag, "")

    def test_search_results(self) -> None:
        """Test parsing a search response"""
        results = SearchResults.from_dict(
            {
                "query": "busybox",
                "num_results": 2,
                "results": [
                    {"name": "busybox", "star_count": 10, "is_official": True},
                    {"name": "someone/busybox", "description": None},
                ],
            }
        )
        self.assertEqual(results.query, "busybox")
        self.assertEqual(results.num_results, 2)
        self.assertEqual(
            [r.name for r in results.results], ["busybox", "someone/busybox"]
        )
        self.assertTrue(results.results[0].is_official)
        self.assertEqual(results.results[1].description, "")

    def test_index_info(self) -> None:
        """Test the credential key of an index"""
        self.assertEqual(
            IndexInfo("docker.io", official=True).auth_config_key(),
            "https://index.docker.io/v1/",
        )
        self.assertEqual(
            IndexInfo("registry.example.com").auth_config_key(), "registry.example.com"
        )

    def test_api_version(self) -> None:
        """Test API version rendering"""
        self.assertEqual(str(APIVersion.V1), "v1")
        self.assertEqual(str(APIVersion.V2), "v2")
        self.assertEqual(str(APIVersion.UNKNOWN), "unknown")
