"""
Expose public dualregistry interface
"""
from .auth import TokenAuthorizer, TokenScope, V1TokenAuth, login
from .config import ServiceConfig, ServiceOptions
from .digest import (
    DigestVerifier,
    VerifyingReader,
    digest_to_img_id,
    img_id_to_digest,
    is_valid_digest,
    read_verified,
)
from .endpoint import APIEndpoint, Endpoint, new_endpoint
from .exceptions import (
    AlreadyExistsError,
    CorruptedBlobError,
    EndpointErrors,
    HTTPRequestError,
    InvalidNameError,
    ManifestInvalidError,
    NoSupportError,
    NotFoundError,
    RegistryError,
    RegistryException,
    UnauthorizedError,
    V2Error,
    V2Errors,
    continue_on_error,
    should_v2_fallback,
    translate_v2_auth_error,
    wrap_error,
)
from .names import split_hostname, split_repos_name
from .repository import FallbackRepository, Layer, Repository
from .service import Service
from .session import Session, loop_endpoints
from .transport import Transport, build_user_agent, new_tls_config
from .types import (
    APIVersion,
    AuthConfig,
    ImgData,
    IndexInfo,
    RepositoryData,
    RepositoryInfo,
    SearchResult,
    SearchResults,
    decode_auth_header,
    encode_auth_header,
)
from .v1 import V1Layer, V1Repository
from .v2 import SignedManifest, V2Client, V2Layer, V2Repository
from .version import __version__
