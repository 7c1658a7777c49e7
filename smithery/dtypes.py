import enum
from pathlib import Path
from typing import Dict, List, NamedTuple, Tuple

import httpx
from pydantic import BaseModel, Field, field_validator

# Kubernetes coordinates of the CRD resource itself.
CRD_GROUP = "apiextensions.k8s.io"
CRD_VERSION = "v1"
CRD_RESOURCE = "customresourcedefinitions"
CRD_KIND = "CustomResourceDefinition"

# Defaults for widget CRDs.
WIDGETS_GROUP = "widgets.templates.krateo.io"
WIDGETS_CATEGORIES = ("widgets", "krateo")
DEFAULT_WIDGET_VERSION = "v1alpha1"


# -----------------------------------------------------------------------------
#                                    Errors
# -----------------------------------------------------------------------------
class ErrCode(enum.Enum):
    """Classify what went wrong.

    The HTTP layer uses these to pick a status code. All members are truthy,
    which means `if err:` works for `Error | None` values.

    """
    INVALID_ARGUMENT = "InvalidArgument"
    INVALID_SCHEMA = "InvalidSchema"
    FIELD_NOT_FOUND = "FieldNotFound"
    DECODE = "DecodeError"
    UNAUTHORIZED = "Unauthorized"
    NOT_FOUND = "NotFound"
    AMBIGUOUS = "AmbiguousMapping"
    ALREADY_EXISTS = "AlreadyExists"
    INVALID = "Invalid"
    CONFLICT = "Conflict"
    TRANSIENT = "Transient"
    GENERATION = "GenerationFailed"
    IO = "IOError"
    INTERNAL = "Internal"


class Error(NamedTuple):
    """Error value returned alongside a result, eg `(obj, Error(...))`."""
    code: ErrCode
    msg: str = ""


# -----------------------------------------------------------------------------
#                                  Kubernetes
# -----------------------------------------------------------------------------
class ResourceCoordinate(NamedTuple):
    """Identify a resource type (and optionally a namespace).

    Exactly one of `kind` or `resource` must be specified. The resolver fills
    in the other one from the API discovery.

    """
    group: str             # "apps" or "" for the core group.
    version: str           # "v1"
    kind: str = ""         # "Deployment"
    resource: str = ""     # "deployments"
    namespace: str = ""    # Empty for cluster scoped resources or all namespaces.

    @property
    def apiVersion(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version


class K8sResource(NamedTuple):
    """Describe how to reach a specific K8s resource kind."""
    apiVersion: str   # "batch/v1beta1" or "v1".
    kind: str         # "Deployment" (as specified in manifest)
    name: str         # "deployments" (plural resource name)
    namespaced: bool  # Whether or not the resource is namespaced.
    url: str          # API endpoint, eg "k8s-host.com/apis/apps/v1".
    singular: str = ""
    shortNames: Tuple[str, ...] = ()
    categories: Tuple[str, ...] = ()

    @property
    def group(self) -> str:
        return self.apiVersion.rpartition("/")[0]

    @property
    def version(self) -> str:
        return self.apiVersion.rpartition("/")[2]


class K8sConfig(NamedTuple):
    """Everything we need to know to connect and authenticate with Kubernetes."""
    # Kubernetes URL, version and name.
    url: str = ""
    name: str = ""
    version: str = ""

    # Bearer token (eg service account or user supplied token).
    token: str = ""

    # Certificate authority for self signed certificates.
    cadata: str | None = None
    cert: Tuple[Path, Path] | None = None
    headers: Dict[str, str] = {}

    # HttpX client to access the cluster. Will be replaced with a properly
    # configured client in `k8s.create_httpx_client`.
    client: httpx.AsyncClient = httpx.AsyncClient()


class GroupVersionKind(NamedTuple):
    group: str
    version: str
    kind: str


class WidgetInfo(NamedTuple):
    """Summary of an installed widget CRD."""
    resource: str
    kind: str
    group: str
    versions: List[str]


# -----------------------------------------------------------------------------
#                             Smithery Configuration
# -----------------------------------------------------------------------------
class ConnectionParameters(BaseModel):
    """Timeouts and connection limits for the K8s API client."""
    connect: float = 5
    read: float = 20
    write: float = 20
    pool: float = 5

    max_connections: int | None = None
    max_keepalive_connections: int | None = None
    keepalive_expiry: float = 5.0

    http1: bool = True
    http2: bool = False


class CorsOptions(BaseModel):
    allow_origins: List[str] = ["*"]
    allow_methods: List[str] = ["GET", "POST", "PUT", "DELETE", "OPTIONS"]
    allow_headers: List[str] = [
        "Accept",
        "Authorization",
        "Content-Type",
        "X-Auth-Code",
        "X-Trace-Id",
    ]
    expose_headers: List[str] = ["Link"]
    allow_credentials: bool = True
    max_age: int = 300


class Config(BaseModel):
    """Runtime configuration of the Smithery service."""
    model_config = {"str_strip_whitespace": True, "extra": "forbid"}

    # Path to Kubernetes credentials (`None` means in-cluster credentials only).
    kubeconfig: Path | None = None

    # Kubernetes context (use `None` to use the default).
    kubecontext: str | None = None

    # Where the HTTP service listens.
    host: str = "0.0.0.0"
    port: int = Field(default=8081, gt=0, lt=65536)

    # API group and categories of all generated widget CRDs.
    widgets_group: str = Field(default=WIDGETS_GROUP, min_length=1)
    categories: List[str] = list(WIDGETS_CATEGORIES)

    # Seconds before the discovery cache is rebuilt (0 means never).
    discovery_ttl: float = Field(default=600, ge=0)

    # Total number of get/update cycles `apply` makes on version conflicts.
    apply_attempts: int = Field(default=1, ge=1, le=10)

    # Largest JSON schema the `/forge` endpoint accepts.
    max_body_size: int = Field(default=100 * 1024, gt=0)

    cors: CorsOptions = CorsOptions()
    connection_parameters: ConnectionParameters = ConnectionParameters()

    @field_validator("categories")
    @classmethod
    def validate_categories(cls, categories: List[str]) -> List[str]:
        for cat in categories:
            if not isinstance(cat, str) or cat.strip() == "":
                raise ValueError(f"Category <{cat}> must be a non-empty string")
        return categories
