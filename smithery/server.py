"""HTTP interface of Smithery.

    POST /forge?apply=<bool>          widget JSON schema -> CRD manifest (YAML)
    GET  /schema?version=&resource=   OpenAPI v3 schema of a widget CRD version
    GET  /list                        all installed widget CRDs
    GET  /health                      service name, version and Pod namespace

All errors are Kubernetes style `Status` documents.

"""
import asyncio
import json
import logging
import time
import uuid
from typing import Tuple

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

import smithery.crds as crds
import smithery.dynamic as dynamic
import smithery.forge
import smithery.k8s as k8s
from smithery import __version__
from smithery.dtypes import Config, ErrCode, Error, K8sConfig
from smithery.restmapper import RESTMapper

# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("smithery")

SERVICE_NAME = "smithery"
TRACE_HEADER = "X-Trace-Id"

# HTTP status for each error class. Everything else is an internal error.
HTTP_CODES = {
    ErrCode.INVALID_ARGUMENT: 400,
    ErrCode.INVALID_SCHEMA: 400,
    ErrCode.DECODE: 400,
    ErrCode.UNAUTHORIZED: 401,
    ErrCode.NOT_FOUND: 404,
}

REASONS = {
    400: "BadRequest",
    401: "Unauthorized",
    403: "Forbidden",
    404: "NotFound",
    405: "MethodNotAllowed",
    406: "NotAcceptable",
    500: "InternalError",
}

# Accepted spellings of boolean query parameters.
TRUE_VALUES = {"1", "t", "T", "TRUE", "true", "True"}
FALSE_VALUES = {"0", "f", "F", "FALSE", "false", "False"}


def status_code(err: Error) -> int:
    return HTTP_CODES.get(err.code, 500)


def status_response(code: int, message: str) -> JSONResponse:
    """Return a Kubernetes `Status` document as the response."""
    body = {
        "kind": "Status",
        "apiVersion": "v1",
        "status": "Failure",
        "message": message,
        "reason": REASONS.get(code, "Unknown"),
        "code": code,
    }
    return JSONResponse(body, status_code=code)


def error_response(err: Error) -> JSONResponse:
    """Return the `Status` response for `err`.

    Internal errors only produce a generic message for the caller. The
    details go into the log.

    """
    code = status_code(err)
    if code == 500:
        logit.error(f"Internal error ({err.code.value}): {err.msg}")
        return status_response(code, "internal error - see service logs for details")
    return status_response(code, err.msg)


def parse_bool(value: str | None, default: bool) -> bool:
    """Return the boolean `value` or `default` if it is missing or invalid."""
    if value in TRUE_VALUES:
        return True
    if value in FALSE_VALUES:
        return False
    return default


def bearer_token(request: Request) -> str:
    """Return the bearer token of the caller or an empty string."""
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    return token.strip() if scheme.lower() == "bearer" else ""


async def service_config(app: FastAPI) -> Tuple[K8sConfig | None, Error | None]:
    """Return the cluster configuration of the service.

    Load the credentials on first use. Failed attempts are not cached, ie the
    next request will try again.

    """
    if app.state.k8sconfig is not None:
        return app.state.k8sconfig, None

    cfg: Config = app.state.cfg
    async with app.state.k8s_lock:
        if app.state.k8sconfig is None:
            k8sconfig, err = await k8s.cluster_config(
                cfg.kubeconfig, cfg.kubecontext, cfg.connection_parameters
            )
            if err:
                return None, Error(ErrCode.UNAUTHORIZED, "no Kubernetes credentials available")
            app.state.k8sconfig = k8sconfig
    return app.state.k8sconfig, None


async def get_client(request: Request) -> Tuple[dynamic.Client | None, Error | None]:
    """Return a dynamic client that acts on behalf of the caller.

    The bearer token of the caller, if any, replaces the service token.

    """
    k8sconfig, err = await service_config(request.app)
    if err or k8sconfig is None:
        return None, err

    token = bearer_token(request)
    if token:
        k8sconfig = k8s.with_token(k8sconfig, token)

    cfg: Config = request.app.state.cfg
    return dynamic.Client(k8sconfig, request.app.state.mapper, cfg.apply_attempts), None


async def forge_widget(request: Request):
    cfg: Config = request.app.state.cfg

    # Only accept JSON.
    ctype = request.headers.get("content-type", "").partition(";")[0].strip().lower()
    if ctype != "application/json":
        return status_response(406, f"invalid media type: {ctype}")

    apply = parse_bool(request.query_params.get("apply", None), default=True)

    body = await request.body()
    if len(body) > cfg.max_body_size:
        msg = f"request body exceeds {cfg.max_body_size} bytes"
        return error_response(Error(ErrCode.INVALID_ARGUMENT, msg))
    if body.strip() == b"":
        return error_response(Error(ErrCode.INVALID_ARGUMENT, "empty body"))

    try:
        schema = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        return error_response(Error(ErrCode.DECODE, f"invalid JSON: {e}"))
    if not isinstance(schema, dict):
        return error_response(Error(ErrCode.INVALID_SCHEMA, "JSON schema must be an object"))

    client = None
    if apply:
        client, err = await get_client(request)
        if err:
            return error_response(err)

    manifest, err = await smithery.forge.forge(schema, cfg.widgets_group, cfg.categories, client)
    if err:
        return error_response(err)
    return Response(manifest, media_type="application/yaml")


async def widget_schema(request: Request):
    cfg: Config = request.app.state.cfg

    version = request.query_params.get("version", "")
    if not version:
        return status_response(400, "missing 'version' query parameter")
    resource = request.query_params.get("resource", "")
    if not resource:
        return status_response(400, "missing 'resource' query parameter")
    if not dynamic.is_label(resource):
        return status_response(400, f"invalid 'resource' query parameter: {resource}")

    client, err = await get_client(request)
    if err or client is None:
        return error_response(err or Error(ErrCode.INTERNAL))

    start = time.monotonic()
    name = crds.crd_name(resource, cfg.widgets_group)
    logit.debug(f"Fetching CRD <{name}>")

    crd, err = await client.get(crds.CRD_COORDINATE, name)
    if err:
        return error_response(err)

    schema, err = crds.openapi_schema(crd, version)
    if err:
        return error_response(err)

    logit.info(f"OpenAPI schema of <{name}/{version}> fetched in {smithery.forge.eta(start)}")
    return JSONResponse(schema)


async def list_widgets(request: Request):
    cfg: Config = request.app.state.cfg

    client, err = await get_client(request)
    if err or client is None:
        return error_response(err or Error(ErrCode.INTERNAL))

    items, err = await client.list(crds.CRD_COORDINATE)
    if err:
        logit.error(f"Unable to list CRDs: {err.msg}")
        return error_response(err)

    widgets = crds.list_widgets(items, cfg.widgets_group)
    if len(widgets) == 0:
        logit.warning("No widgets found")
        return error_response(Error(ErrCode.NOT_FOUND, "no widgets found"))
    return JSONResponse([_._asdict() for _ in widgets])


async def health(request: Request):
    return {
        "name": SERVICE_NAME,
        "version": __version__,
        "namespace": k8s.service_account_namespace(),
    }


async def trace_requests(request: Request, call_next):
    """Tag every request with a trace ID and log its outcome."""
    trace_id = request.headers.get(TRACE_HEADER, "") or uuid.uuid4().hex
    request.state.trace_id = trace_id

    start = time.monotonic()
    response = await call_next(request)
    response.headers[TRACE_HEADER] = trace_id

    logit.info(
        f"{request.method} {request.url.path} {response.status_code} "
        f"{smithery.forge.eta(start)} trace={trace_id}"
    )
    return response


async def http_exception(request: Request, exc: StarletteHTTPException):
    """Return framework errors (eg 404 or 405) as `Status` documents too."""
    response = status_response(exc.status_code, str(exc.detail))
    for key, value in (exc.headers or {}).items():
        response.headers[key] = value
    return response


def create_app(cfg: Config,
               k8sconfig: K8sConfig | None = None,
               mapper: RESTMapper | None = None) -> FastAPI:
    """Return the Smithery web application.

    Inputs:
        cfg: Config
            Service configuration.
        k8sconfig: K8sConfig | None
            Cluster access (`None` to load it from `cfg` on first use).
        mapper: RESTMapper | None
            Shared discovery cache (`None` to create one).

    Returns:
        FastAPI

    """
    app = FastAPI(title="Smithery", version=__version__)

    app.state.cfg = cfg
    app.state.k8sconfig = k8sconfig
    app.state.k8s_lock = asyncio.Lock()
    app.state.mapper = mapper if mapper is not None else RESTMapper(ttl=cfg.discovery_ttl)

    app.add_api_route("/forge", forge_widget, methods=["POST"])
    app.add_api_route("/schema", widget_schema, methods=["GET"])
    app.add_api_route("/list", list_widgets, methods=["GET"])
    app.add_api_route("/health", health, methods=["GET"])

    app.add_exception_handler(StarletteHTTPException, http_exception)
    app.middleware("http")(trace_requests)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors.allow_origins,
        allow_methods=cfg.cors.allow_methods,
        allow_headers=cfg.cors.allow_headers,
        expose_headers=cfg.cors.expose_headers,
        allow_credentials=cfg.cors.allow_credentials,
        max_age=cfg.cors.max_age,
    )
    return app
