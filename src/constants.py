"""Constants used in the project."""

from enum import Enum


class ExitCodes(Enum):
    """Exit codes for the program.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    FILE_ERROR = 1
    CONNECTION_ERROR = 2
    PARSE_ERROR = 3
    RESOLUTION_ERROR = 4
    INTEGRITY_ERROR = 5
    AUTH_ERROR = 6
    REGISTRY_ERROR = 7


class PackageKind(Enum):
    """Package kinds a manifest may declare.

    Args:
        Enum (string): Kind name as written in Proto.toml.
    """

    LIBRARY = "lib"
    API = "api"


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    MANIFEST_FILE = "Proto.toml"
    LOCKFILE_FILE = "Proto.lock"
    PROTO_DIR = "proto"
    VENDOR_DIR = "proto/vendor"
    INSTALL_LOCK_FILE = ".protopack.lock"
    SCHEMA_SUFFIX = ".proto"

    LOCKFILE_FORMAT_VERSION = 1
    DIGEST_ALGORITHM = "sha256"
    ARCHIVE_EXTENSION = ".tgz"

    PACKAGE_NAME_PATTERN = r"^[a-z][a-z0-9-]{1,127}$"
    REPOSITORY_PATTERN = r"^[a-z][a-z0-9-]*$"

    # Registry wire protocol, relative to the registry url
    VERSIONS_PATH_TEMPLATE = "{repository}/{name}/versions.json"
    ARCHIVE_PATH_TEMPLATE = "{repository}/{name}/{name}-{version}.tgz"

    LOG_FORMAT = "[%(levelname)s] %(message)s"
    LOG_LEVEL_ENV = "PROTOPACK_LOG_LEVEL"
    REQUEST_TIMEOUT = 30  # Timeout in seconds for a single HTTP request
    HTTP_RETRY_MAX = 3
    HTTP_RETRY_BASE_DELAY_SEC = 0.3
    HTTP_RETRY_MAX_DELAY_SEC = 5.0
    MAX_CONCURRENCY = 8
    USER_AGENT = "protopack/0.1"

    CONFIG_ENV = "PROTOPACK_CONFIG"
    REGISTRY_ENV = "PROTOPACK_REGISTRY"
    TOKEN_ENV = "PROTOPACK_TOKEN"
    DEFAULT_CONFIG_PATH = "~/.config/protopack/config.yml"
    DEFAULT_CREDENTIALS_PATH = "~/.config/protopack/credentials.json"
