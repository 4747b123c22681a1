"""API version negotiation: ``api-version`` from the query string or a header."""

import re
from typing import NamedTuple, Optional, Tuple

VERSION_PARAMETER = "api-version"
SUPPORTED_VERSIONS_HEADER = "api-supported-versions"

_VERSION_RE = re.compile(r"^(\d+)(?:\.(\d+))?$")


class UnsupportedApiVersion(ValueError):
    """The requested version is malformed or not served."""
    pass


class ApiVersion(NamedTuple):
    major: int
    minor: int = 0

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}"


DEFAULT_VERSION = ApiVersion(1, 0)
SUPPORTED_VERSIONS: Tuple[ApiVersion, ...] = (DEFAULT_VERSION,)


def resolve_version(value: Optional[str]) -> ApiVersion:
    """
    Resolve the requested API version.

    Unspecified means the default version. Raises UnsupportedApiVersion
    for anything malformed or not in SUPPORTED_VERSIONS.
    """
    if value is None or not value.strip():
        return DEFAULT_VERSION
    match = _VERSION_RE.match(value.strip())
    if not match:
        raise UnsupportedApiVersion(f"Malformed api-version {value!r}")
    version = ApiVersion(int(match.group(1)), int(match.group(2) or 0))
    if version not in SUPPORTED_VERSIONS:
        raise UnsupportedApiVersion(f"api-version {version} is not supported")
    return version


def supported_versions_header() -> str:
    return ", ".join(str(v) for v in SUPPORTED_VERSIONS)
