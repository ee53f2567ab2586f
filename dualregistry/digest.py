"""
Digest helpers: the mapping between legacy image IDs and synthetic digests,
and the verifying reader used when fetching content addressed blobs.
"""
import hashlib
import logging
import re
from typing import BinaryIO, Callable, Optional

from .exceptions import CorruptedBlobError, RegistryException

LOGGER = logging.getLogger(__name__)

LEGACY_DIGEST_PREFIX = "random:"

DIGEST_PATTERN = re.compile(r"^[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-zA-Z0-9=_-]+$")
HEX_ALGORITHMS = {"sha256": 64, "sha384": 96, "sha512": 128}


def img_id_to_digest(img_id: str) -> str:
    """
    Returns the synthetic digest standing in for a legacy image ID.
    """
    return LEGACY_DIGEST_PREFIX + img_id


def digest_to_img_id(dgst: str) -> str:
    """
    Returns the legacy image ID a synthetic digest was built from.
    """
    return dgst[len(LEGACY_DIGEST_PREFIX) :]


def is_legacy_digest(dgst: str) -> bool:
    """
    Returns true if dgst was produced by img_id_to_digest.
    """
    return dgst.startswith(LEGACY_DIGEST_PREFIX)


def is_valid_digest(dgst: str) -> bool:
    """
    Returns true for well formed algorithm:hex digests, or synthetic legacy
    digests.
    """
    if not isinstance(dgst, str) or not DIGEST_PATTERN.match(dgst):
        return False
    algorithm, encoded = dgst.split(":", 1)
    if algorithm == LEGACY_DIGEST_PREFIX[:-1]:
        return True
    expected_len = HEX_ALGORITHMS.get(algorithm)
    if expected_len is None:
        return False
    return len(encoded) == expected_len and bool(re.fullmatch(r"[0-9a-f]+", encoded))


class DigestVerifier:
    """
    Accumulates written bytes and checks them against an expected digest.
    """

    def __init__(self, dgst: str) -> None:
        if not is_valid_digest(dgst) or is_legacy_digest(dgst):
            raise RegistryException("cannot verify digest {}".format(dgst))
        algorithm, self.expected = dgst.split(":", 1)
        self.dgst = dgst
        self._hash = hashlib.new(algorithm)

    def write(self, data: bytes) -> int:
        self._hash.update(data)
        return len(data)

    def verified(self) -> bool:
        """
        Returns true if the bytes written so far hash to the expected digest.
        """
        return self._hash.hexdigest() == self.expected


class VerifyingReader:
    """
    File-like wrapper that tees everything read from blob into a verifier.
    """

    def __init__(self, blob: BinaryIO, verifier: DigestVerifier) -> None:
        self.blob = blob
        self.verifier = verifier

    def read(self, size: int = -1) -> bytes:
        data = self.blob.read(size)
        if data:
            self.verifier.write(data)
        return data

    def close(self) -> None:
        self.blob.close()

    def __enter__(self) -> "VerifyingReader":
        return self

    def __exit__(self, *args) -> None:
        self.close()


def read_verified(
    blob: BinaryIO,
    verify: Optional[Callable[[], bool]],
    dgst: str = "",
    chunk_size: int = 2 ** 16,
) -> bytes:
    """
    Drain blob and return its content, raising CorruptedBlobError if the
    verify callable returned by Layer.fetch() rejects it.
    """
    chunks = []
    try:
        for chunk in iter(lambda: blob.read(chunk_size), b""):
            chunks.append(chunk)
    finally:
        blob.close()
    if verify is not None and not verify():
        LOGGER.warning("Blob %s failed digest verification", dgst or "<unknown>")
        raise CorruptedBlobError(
            "filesystem layer verification failed for digest {}".format(dgst)
        )
    return b"".join(chunks)
