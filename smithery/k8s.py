import asyncio
import base64
import json
import logging
import os
import ssl
import subprocess
import tempfile
from pathlib import Path
from typing import Dict, List, NamedTuple, Tuple
from urllib.parse import urlparse

import httpx
import tenacity as tc
import yaml

from smithery.dtypes import ConnectionParameters, K8sConfig, K8sResource

# Convenience: location of K8s credentials inside a Pod.
TOKENFILE = Path("/var/run/secrets/kubernetes.io/serviceaccount/token")
CAFILE = Path("/var/run/secrets/kubernetes.io/serviceaccount/ca.crt")
NAMESPACEFILE = Path("/var/run/secrets/kubernetes.io/serviceaccount/namespace")

# Define the exceptions we want to retry on.
WEB_EXCEPTIONS = (httpx.RequestError, ssl.SSLError, KeyError, TimeoutError)


# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("smithery")


def _on_backoff(retry_state: tc.RetryCallState):
    """Log a warning on each retry."""
    attempt = retry_state.attempt_number
    k8sconfig, method, url = retry_state.args[:3]
    path = urlparse(url).path

    logit.warning(f"Back off {attempt} - {k8sconfig.name} - {method} {path}.")


async def _mysleep(delay: float):
    """This trivial function exists to mock out the `sleep` call during tests."""
    await asyncio.sleep(delay)


# Requests run on behalf of an HTTP caller: at most 3 attempts within 20s.
@tc.retry(
    stop=(tc.stop_after_delay(20) | tc.stop_after_attempt(3)),
    wait=tc.wait_exponential(multiplier=0.5, min=0, max=4),
    retry=tc.retry_if_exception_type(WEB_EXCEPTIONS),
    before_sleep=_on_backoff,
    reraise=True,
    sleep=_mysleep,
)
async def _call(k8sconfig: K8sConfig,
                method: str,
                url: str,
                payload: dict | list | None,
                headers: dict | None) -> httpx.Response:
    return await k8sconfig.client.request(method, url, json=payload, headers=headers)


async def request(
        k8sconfig: K8sConfig,
        method: str,
        url: str,
        payload: dict | list | None,
        headers: dict | None) -> Tuple[dict, int, bool]:
    """Return response of web request made with `k8sconfig.client`.

    Inputs:
        k8sconfig: K8sConfig
        url: str
            Eg `https://1.2.3.4/api/v1/namespaces`)
        payload: dict
            Anything that can be JSON encoded, usually a K8s manifest.
        headers: dict
            Request headers. These will *not* replace the existing request
            headers dictionary (eg the access tokens), but augment them.

    Returns:
        (dict, int, bool): the JSON response, the HTTP status code and error.

    """
    # Per request headers in `k8sconfig` (eg a caller supplied bearer token)
    # take precedence over the ones of the shared client.
    headers = {**k8sconfig.headers, **(headers or {})} or None

    # Make the HTTP request via our backoff/retry handler.
    try:
        ret = await _call(k8sconfig, method, url, payload=payload, headers=headers)
    except WEB_EXCEPTIONS as err:
        logit.error(f"Giving up - {k8sconfig.name} - {err} - {method} {url}")
        return ({}, -1, True)

    try:
        response = json.loads(ret.text)
    except json.decoder.JSONDecodeError as err:
        msg = (
            f"JSON error - {k8sconfig.name} - "
            f"{err.msg} in line {err.lineno} column {err.colno}",
            "-" * 80 + "\n" + err.doc + "\n" + "-" * 80,
        )
        logit.error(str.join("\n", msg))
        return ({}, ret.status_code, True)

    # Log the entire request in debug mode. Never log the access token.
    logit.debug(
        f"{method} {ret.status_code} {ret.url}\n"
        f"Payload: {payload}\n"
        f"Response: {response}\n"
    )
    return (response, ret.status_code, False)


async def get(k8sconfig: K8sConfig, url: str) -> Tuple[dict, bool]:
    """Make GET requests to K8s (see `request`)."""
    resp, code, err = await request(k8sconfig, 'GET', url, payload=None, headers=None)
    if err or code != 200:
        logit.error(f"{code} - GET - {url} - {resp}")
        return (resp, True)
    return (resp, False)


class KubeconfigContext(NamedTuple):
    """User and cluster entries that a kubeconfig context points to."""
    name: str       # Cluster name.
    user: dict
    cluster: dict


def load_kubeconfig(kubeconf_path: Path,
                    context: str | None) -> Tuple[KubeconfigContext, bool]:
    """Return the user and cluster entries of `context` in `kubeconf_path`.

    Inputs:
        kubeconf_path: Path
            Path to kubeconfig file, eg "~/.kube/config.yaml"
        context: str | None
            Kubeconf context. Use `None` to select the default context.

    Returns:
        KubeconfigContext, err

    """
    err_resp = KubeconfigContext("", {}, {}), True

    try:
        kubeconf = yaml.safe_load(Path(kubeconf_path).read_text())
    except OSError as err:
        logit.error(f"Cannot read Kubeconfig <{kubeconf_path}>: {err}")
        return err_resp
    except yaml.YAMLError:
        logit.error(f"Kubeconfig YAML file <{kubeconf_path}> is corrupt")
        return err_resp

    def by_name(section: str, name: str) -> dict | None:
        hits = [_ for _ in kubeconf[section] if _["name"] == name]
        return hits[0] if len(hits) == 1 else None

    try:
        ctx_name = context or kubeconf["current-context"]
        ctx = by_name("contexts", ctx_name)
        if ctx is None:
            logit.error(f"Could not find context <{ctx_name}> in <{kubeconf_path}>")
            return err_resp

        user = by_name("users", ctx["context"]["user"])
        cluster = by_name("clusters", ctx["context"]["cluster"])
        if user is None or cluster is None:
            logit.error(f"Context <{ctx_name}> has no unique user or cluster")
            return err_resp

        ret = KubeconfigContext(cluster["name"], dict(user["user"]), dict(cluster["cluster"]))
    except (KeyError, TypeError, ValueError):
        logit.error(f"Kubeconfig YAML file <{kubeconf_path}> is invalid")
        return err_resp

    logit.info(f"Loaded context <{ctx_name}> from Kubeconfig <{kubeconf_path}>")
    return ret, False


def load_incluster_config(
        tokenfile: Path = TOKENFILE,
        cafile: Path = CAFILE) -> Tuple[K8sConfig, bool]:
    """Return K8s access config from the service account of the Pod.

    Returns an error outside a Pod.

    """
    # Kubernetes injects the API address into every Pod.
    host = os.getenv('KUBERNETES_SERVICE_HOST', None)
    port = os.getenv('KUBERNETES_SERVICE_PORT', "443")
    tokenfile, cafile = Path(tokenfile), Path(cafile)

    if host is None or not (tokenfile.exists() and cafile.exists()):
        logit.debug("No incluster (service account) credentials.")
        return K8sConfig(), True

    logit.info("Use incluster (service account) credentials.")
    return K8sConfig(
        url=f'https://{host}:{port}',
        name="incluster",
        token=tokenfile.read_text().strip(),
        cadata=cafile.read_text(),
    ), False


def service_account_namespace(fname: Path = NAMESPACEFILE) -> str:
    """Return the namespace of the Pod we run in (empty outside a Pod)."""
    try:
        return fname.read_text().strip()
    except OSError:
        return ""


def run_external_command(cmd: List[str], env: Dict[str, str]) -> Tuple[str, str, bool]:
    """Run `cmd` with the additional `env` and return its stdout and stderr."""
    try:
        out = subprocess.run(cmd, env=dict(os.environ) | env, capture_output=True)
    except FileNotFoundError:
        return "", "", True

    if out.returncode != 0:
        return "", out.stderr.decode("utf8"), True

    try:
        return out.stdout.decode("utf8"), "", False
    except UnicodeDecodeError:
        return "", "", True


def _cluster_cadata(cluster: dict) -> str | None:
    """Return the certificate authority of `cluster` (or `None` if it has none)."""
    if "certificate-authority-data" in cluster:
        return base64.b64decode(cluster["certificate-authority-data"]).decode()
    if "certificate-authority" in cluster:
        return Path(cluster["certificate-authority"]).read_text()
    return None


def _write_client_certs(user: dict) -> Tuple[Path, Path]:
    """Save the inline client certificate and key of `user` to temporary files.

    HttpX only accepts client certificates as files.

    """
    crt = base64.b64decode(user["client-certificate-data"])
    key = base64.b64decode(user["client-key-data"])

    folder = Path(tempfile.mkdtemp(prefix="smithery-"))
    p_crt, p_key = folder / "client.crt", folder / "client.key"
    p_crt.write_bytes(crt)
    p_key.write_bytes(key)
    return p_crt, p_key


def load_authenticator_config(kubeconf_path: Path,
                              context: str | None) -> Tuple[K8sConfig, bool]:
    """Return K8s config for a context that obtains its token from an app.

    The app (eg `aws-iam-authenticator`) must print a YAML document with the
    bearer token in `status.token`.

    Inputs:
        kubeconf_path: Path
            Path to kubeconfig file, eg "~/.kube/config.yaml"
        context: str | None
            Kubeconf context. Use `None` to select the default context.

    Returns:
        K8sConfig, err

    """
    err_resp = K8sConfig(), True
    kctx, err = load_kubeconfig(kubeconf_path, context)
    if err:
        return err_resp

    try:
        app = kctx.user["exec"]
        cmd = [app["command"], *(app.get("args", None) or [])]
        app_env = {_["name"]: _["value"] for _ in app.get("env", None) or []}
        url, cadata = kctx.cluster["server"], _cluster_cadata(kctx.cluster)
    except (KeyError, TypeError, ValueError, OSError):
        logit.debug(f"Context {context} in <{kubeconf_path}> uses no authenticator app")
        return err_resp

    logit.debug(f"Authenticator app: {cmd} with envs: {app_env}")
    stdout, stderr, err = run_external_command(cmd, dict(os.environ) | app_env)
    if err:
        logit.error(f"Authenticator app {cmd} failed: {stderr}")
        return err_resp

    try:
        token = yaml.safe_load(stdout)["status"]["token"]
    except (KeyError, TypeError, yaml.YAMLError):
        logit.error(f"Authenticator app {cmd} did not produce a token")
        return err_resp

    logit.info(f"Assuming authenticator app for {kctx.name}.")
    return K8sConfig(url=url, name=kctx.name, token=token, cadata=cadata), False


def load_token_config(kubeconf_path: Path,
                      context: str | None) -> Tuple[K8sConfig, bool]:
    """Return K8s config for a kubeconfig user with a static bearer token."""
    kctx, err = load_kubeconfig(kubeconf_path, context)
    if err:
        return K8sConfig(), True

    try:
        token, url = kctx.user["token"], kctx.cluster["server"]
        cadata = _cluster_cadata(kctx.cluster)
    except (KeyError, ValueError, OSError):
        logit.debug(f"Context {context} in <{kubeconf_path}> uses no token")
        return K8sConfig(), True

    logit.info(f"Assuming token based cluster for {kctx.name}.")
    return K8sConfig(url=url, name=kctx.name, token=token, cadata=cadata), False


def load_minikube_config(kubeconf_path: Path,
                         context: str | None) -> Tuple[K8sConfig, bool]:
    """Return K8s config for a context with client certificate files."""
    kctx, err = load_kubeconfig(kubeconf_path, context)
    if err:
        return K8sConfig(), True

    try:
        cert = (Path(kctx.user["client-certificate"]), Path(kctx.user["client-key"]))
        url, cadata = kctx.cluster["server"], _cluster_cadata(kctx.cluster)
    except (KeyError, TypeError, ValueError, OSError):
        logit.debug(f"Context {context} in <{kubeconf_path}> is not a Minikube config")
        return K8sConfig(), True

    logit.info(f"Assuming Minikube cluster for {kctx.name}.")
    return K8sConfig(url=url, name=kctx.name, cadata=cadata, cert=cert), False


def load_kind_config(kubeconf_path: Path, context: str | None) -> Tuple[K8sConfig, bool]:
    """Return K8s config for a context with inline client certificates.

    This is what Kind produces. The certificates end up in temporary files.

    """
    kctx, err = load_kubeconfig(kubeconf_path, context)
    if err:
        return K8sConfig(), True

    try:
        url = kctx.cluster["server"]
        cadata = base64.b64decode(kctx.cluster["certificate-authority-data"]).decode()
        cert = _write_client_certs(kctx.user)
    except (KeyError, ValueError):
        logit.debug(f"Context {context} in <{kubeconf_path}> is not a Kind config")
        return K8sConfig(), True

    logit.info(f"Assuming Kind cluster for {kctx.name}.")
    return K8sConfig(url=url, name=kctx.name, cadata=cadata, cert=cert), False


def load_auto_config(kubeconf_path: Path | None,
                     context: str | None) -> Tuple[K8sConfig, bool]:
    """Return the first K8s configuration that works.

    Without `kubeconf_path` only the incluster credentials qualify. Otherwise
    try, in this order, an authenticator app, a static token, Kind and
    Minikube.

    """
    if kubeconf_path is None:
        conf, err = load_incluster_config()
        if err:
            logit.error("No kubeconfig file and no incluster credentials")
            return K8sConfig(), True
        return conf, False

    loaders = (
        load_authenticator_config,
        load_token_config,
        load_kind_config,
        load_minikube_config,
    )
    for loader in loaders:
        conf, err = loader(kubeconf_path, context)
        if not err:
            return conf, False
        logit.debug(f"{loader.__name__} does not apply")

    logit.error(f"Could not find a valid configuration in <{kubeconf_path}>")
    return K8sConfig(), True


def create_httpx_client(k8sconfig: K8sConfig,
                        conparam: ConnectionParameters) -> Tuple[K8sConfig, bool]:
    """Return a copy of `k8sconfig` with a configured HttpX client."""
    try:
        # Verify the API server against the cluster CA.
        sslcontext = ssl.create_default_context(cadata=k8sconfig.cadata)

        timeout = httpx.Timeout(
            timeout=conparam.read,
            connect=conparam.connect,
            read=conparam.read,
            write=conparam.write,
            pool=conparam.pool,
        )
        limits = httpx.Limits(
            max_connections=conparam.max_connections,
            max_keepalive_connections=conparam.max_keepalive_connections,
            keepalive_expiry=conparam.keepalive_expiry,
        )
        transport = httpx.AsyncHTTPTransport(
            verify=sslcontext,
            cert=k8sconfig.cert,      # type: ignore
            retries=0,
            http1=conparam.http1,
            http2=conparam.http2,
        )
        client = httpx.AsyncClient(timeout=timeout, limits=limits, transport=transport)
    except ssl.SSLError:
        logit.error(f"Invalid certificates for {k8sconfig.name}")
        return k8sconfig, True
    except FileNotFoundError:
        logit.error(f"Client certificate files for {k8sconfig.name} do not exist")
        return k8sconfig, True

    # Add the bearer token if we have one.
    headers = {'authorization': f'Bearer {k8sconfig.token}'} if k8sconfig.token else {}
    client.headers.update(headers)

    k8sconfig = k8sconfig._replace(client=client, headers=headers)
    return k8sconfig, False


def with_token(k8sconfig: K8sConfig, token: str) -> K8sConfig:
    """Return copy of `k8sconfig` that authenticates with `token` instead."""
    return k8sconfig._replace(
        token=token,
        headers={'authorization': f'Bearer {token}'},
    )


async def version(k8sconfig: K8sConfig) -> Tuple[K8sConfig, bool]:
    """Return a copy of `k8sconfig` with the version of the K8s API, eg "1.30"."""
    url = f"{k8sconfig.url}/version"
    resp, err = await get(k8sconfig, url)
    try:
        assert not err
        ver = f"{resp['major']}.{resp['minor']}"
    except (AssertionError, KeyError, TypeError):
        logit.error(f"Could not determine the K8s version of {k8sconfig.name} ({url})")
        return K8sConfig(), True
    return k8sconfig._replace(version=ver), False


async def cluster_config(kubeconfig: Path | None,
                         context: str | None,
                         conparam: ConnectionParameters) -> Tuple[K8sConfig, bool]:
    """Return the `K8sConfig` for the cluster in `kubeconfig`.

    Load the credentials, create the HttpX client and probe the API version.
    The service calls this on first use, the CLI once at start-up.

    Inputs:
        kubeconfig: Path
            Path to kubeconfig file (`None` to use incluster credentials).
        context: str
            Kubernetes context to use (can be `None` to use default).
        conparam: ConnectionParameters
            Timeouts and limits for the HttpX client.

    Returns:
        K8sConfig, err

    """
    kubeconfig = kubeconfig.expanduser() if kubeconfig else None
    try:
        k8sconfig, err = load_auto_config(kubeconfig, context)
        assert not err

        k8sconfig, err = create_httpx_client(k8sconfig, conparam)
        assert not err

        k8sconfig, err = await version(k8sconfig)
        assert not err
    except AssertionError:
        return K8sConfig(), True

    logit.info(f"Connected to {k8sconfig.name} at {k8sconfig.url} (K8s {k8sconfig.version})")
    return k8sconfig, False


def parse_api_group(api_version: str, url: str, resp: dict) -> List[K8sResource]:
    """Compile the K8s API `resp` into `K8sResource` tuples.

    The `resp` is the verbatim response from the K8s API group regarding the
    resources it provides, eg the response for `/apis/apps/v1`. Subresources
    like "deployments/status" are not resource types in their own right and
    therefore skipped.

    """
    out: List[K8sResource] = []
    for res in resp.get("resources", []):
        name = res["name"]

        # Ignore resources like "services/status". We only care for "services".
        if "/" in name:
            logit.debug(f"Ignore resource <{name}>: has a slash ('/') in its name")
            continue

        out.append(K8sResource(
            apiVersion=api_version,
            kind=res["kind"],
            name=name,
            namespaced=res["namespaced"],
            url=url,
            singular=res.get("singularName", "") or res["kind"].lower(),
            shortNames=tuple(res.get("shortNames", None) or []),
            categories=tuple(res.get("categories", None) or []),
        ))
    return out


async def _get_discovery(k8sconfig: K8sConfig, url: str) -> Tuple[dict, int, bool]:
    """Return the discovery document at `url` and the HTTP status of the request."""
    resp, code, err = await request(k8sconfig, 'GET', url, payload=None, headers=None)
    if err or code != 200:
        logit.error(f"Could not interrogate {k8sconfig.name} ({url}): {code} - {resp}")
        return (resp, code, True)
    return (resp, code, False)


async def fetch_discovery(
        k8sconfig: K8sConfig) -> Tuple[List[K8sResource], Dict[str, str], int, bool]:
    """Download the API discovery of the cluster.

    Returns all resources of all versions of all API groups as well as the
    preferred version of each group, eg

        preferred = {"": "v1", "apps": "v1", "batch": "v1", ...}

    Inputs:
        k8sconfig: K8sConfig

    Returns:
        List[K8sResource], Dict[str, str], status, err

        The `status` is the HTTP code of the last request, eg 401 if K8s
        rejected the credentials, or -1 if K8s was unreachable.

    """
    # Compile the list of all K8s API groups that this K8s instance knows about.
    resp, code, err = await _get_discovery(k8sconfig, f"{k8sconfig.url}/apis")
    if err:
        return ([], {}, code, True)

    # Compile the list of all API group versions and their endpoints, eg
    # [("apps/v1", "apis/apps/v1"), ("batch/v1", "apis/batch/v1"), ...]
    #
    # The "v1" group comprises the traditional core components like Service and
    # Pod. This group is a special case and exposed under "api/v1" instead
    # of the usual `apis/...` path.
    endpoints: List[Tuple[str, str]] = [("v1", "api/v1")]
    preferred: Dict[str, str] = {"": "v1"}
    try:
        for group in resp["groups"]:
            name = group["name"]
            preferred[name] = group["preferredVersion"]["version"]
            for version in group["versions"]:
                ver = version["groupVersion"]
                endpoints.append((ver, f"apis/{ver}"))
    except (KeyError, TypeError):
        logit.error(f"Invalid API group list from {k8sconfig.name}")
        return ([], {}, code, True)

    # Contact K8s to find out which resources each API group version offers.
    resources: List[K8sResource] = []
    for api_version, path in endpoints:
        url = f"{k8sconfig.url}/{path}"
        resp, code, err = await _get_discovery(k8sconfig, url)
        if err:
            return ([], {}, code, True)

        try:
            resources.extend(parse_api_group(api_version, url, resp))
        except (KeyError, TypeError):
            logit.error(f"Invalid resource list for {api_version} from {k8sconfig.name}")
            return ([], {}, code, True)

    logit.debug(f"Discovered {len(resources)} resources on {k8sconfig.name}")
    return (resources, preferred, code, False)
