import argparse
import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Tuple

import uvicorn
from colorlog import ColoredFormatter

import smithery.cfgfile
import smithery.forge
import smithery.k8s
import smithery.server
from smithery import DEFAULT_CONFIG_FILE, __version__
from smithery.dtypes import Config
from smithery.dynamic import Client
from smithery.restmapper import RESTMapper

# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("smithery")


def setup_logging(log_level: int) -> None:
    """Configure logging at `log_level`.

    Level 0: ERROR
    Level 1: WARNING
    Level 2: INFO
    Level >=3: DEBUG

    """
    # Pick the correct log level.
    if log_level == 0:
        level = "ERROR"
    elif log_level == 1:
        level = "WARNING"
    elif log_level == 2:
        level = "INFO"
    else:
        level = "DEBUG"

    # Create logger.
    logger = logging.getLogger("smithery")
    logger.setLevel(level)

    # Configure stdout handler.
    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(
        ColoredFormatter(
            "%(log_color)s%(levelname)s%(reset)s - "
            "%(filename)s:%(funcName)s:%(lineno)d - %(message)s"
        )
    )

    # Replace the handlers from previous calls.
    logger.handlers = [handler]
    logit.info(f"Set log level to {level}")


def env_flag(name: str) -> bool:
    """Return `True` if the environment variable `name` is a true-ish value."""
    return os.getenv(name, "").strip().lower() in {"1", "t", "true", "yes", "on"}


def parse_commandline_args(args=None):
    """Return parsed command line."""
    # A dummy top level parser that will become the parent for all sub-parsers
    # to share all its arguments.
    parent = argparse.ArgumentParser(
        formatter_class=argparse.RawDescriptionHelpFormatter,
        add_help=False,
        prog="smithery",
    )
    parent.add_argument(
        "-v", "--verbosity", action="count", default=0,
        help="Log level (-v: WARNING -vv: INFO -vvv: DEBUG)"
    )
    parent.add_argument(
        "--debug", action="store_true", default=env_flag("DEBUG"),
        help="Enable debug logs (same as -vvv)"
    )
    parent.add_argument(
        "-c", "--config", type=str, default="", dest="configfile",
        help="Read configuration from this file"
    )
    parent.add_argument(
        "--kubeconfig", type=str, metavar="path",
        default=None, help="Location of kubeconfig file",
    )
    parent.add_argument(
        "--kubecontext", type=str, metavar="kubecontext", default=None,
        help="Kubernetes context (defaults to default context)",
    )

    # The primary parser for the top level options.
    parser = argparse.ArgumentParser(add_help=True, prog="smithery")
    subparsers = parser.add_subparsers(
        help='Mode', dest='parser', metavar="ACTION",
        title="Operation", required=True,
    )

    # Sub-command SERVE.
    parser_serve = subparsers.add_parser(
        'serve', help="Run the HTTP service", parents=[parent]
    )
    parser_serve.add_argument(
        "--host", type=str, default=None,
        help="Listen on this address (defaults to config file)",
    )
    parser_serve.add_argument(
        "--port", type=int, default=None,
        help="Listen on this port (defaults to $PORT or config file)",
    )

    # Sub-command FORGE.
    parser_forge = subparsers.add_parser(
        'forge', help="Print the CRD for a widget JSON schema", parents=[parent]
    )
    parser_forge.add_argument(
        "schema", type=str, metavar="schema.json",
        help="Widget JSON schema",
    )
    parser_forge.add_argument(
        "--apply", action="store_true",
        help="Also install the CRD in the cluster",
    )

    # Sub-command VERSION.
    subparsers.add_parser(
        'version', help="Show Smithery version and exit", parents=[parent]
    )

    # Sub-command CONFIG.
    parser_config = subparsers.add_parser(
        'config', help="Create a default configuration file", parents=[parent]
    )
    parser_config.add_argument(
        "-o", "--output", type=str, default="smithery.yaml",
        help="Configuration file to create (defaults to ./smithery.yaml)",
    )

    return parser.parse_args(args)


def compile_config(cmdline_param) -> Tuple[Config, bool]:
    """Return `Config` from `cmdline_param`.

    Command line arguments always win. After that, the precedence is
      - kubeconfig: config file, `KUBECONFIG` environment variable
      - port: `PORT` environment variable, config file

    Inputs:
        cmdline_param: SimpleNamespace

    Returns:
        Config, err

    """
    err_resp = Config(), True

    # Convenience.
    p = cmdline_param

    # Load the default configuration unless the user specified an explicit one.
    cfg_file = Path(p.configfile) if p.configfile else DEFAULT_CONFIG_FILE
    logit.info(f"Loading configuration file <{cfg_file}>")
    cfg, err = smithery.cfgfile.load(cfg_file)
    if err:
        return err_resp

    # Determine which Kubeconfig to use. The order is: `--kubeconfig`,
    # config file, `KUBECONFIG` environment variable. Use the service account
    # credentials if none of them is set.
    kubeconfig = p.kubeconfig or cfg.kubeconfig or os.getenv("KUBECONFIG", "")
    cfg.kubeconfig = Path(kubeconfig).expanduser() if kubeconfig else None
    cfg.kubecontext = p.kubecontext or cfg.kubecontext

    # Abort if the user explicitly asked for credentials we do not have.
    if cfg.kubeconfig is not None and not cfg.kubeconfig.exists():
        logit.error(f"Cannot find Kubernetes config file <{cfg.kubeconfig}>")
        return err_resp

    # Address of the web service (only `serve` has these options).
    host = getattr(p, "host", None)
    port = getattr(p, "port", None)
    port = os.getenv("PORT", "") if port is None else str(port)
    try:
        cfg = cfg.model_copy(update={
            "host": host or cfg.host,
            "port": int(port) if port else cfg.port,
        })
    except ValueError:
        logit.error(f"Invalid port <{port}>")
        return err_resp
    if not (0 < cfg.port < 65536):
        logit.error(f"Invalid port <{cfg.port}>")
        return err_resp

    return cfg, False


def serve(cfg: Config) -> bool:
    """Run the HTTP service until it receives a termination signal."""
    app = smithery.server.create_app(cfg)
    logit.info(f"Smithery {__version__} listening on {cfg.host}:{cfg.port}")

    # Leave the logging setup alone since we already configured it.
    uvicorn.run(app, host=cfg.host, port=cfg.port, log_config=None)
    return False


async def forge_file(cfg: Config, fname: Path, apply: bool) -> bool:
    """Print the CRD for the widget schema in `fname` and optionally apply it."""
    try:
        schema = json.loads(fname.read_text())
    except (OSError, json.JSONDecodeError) as e:
        logit.error(f"Cannot load JSON schema <{fname}>: {e}")
        return True
    if not isinstance(schema, dict):
        logit.error(f"JSON schema in <{fname}> must be an object")
        return True

    client = None
    if apply:
        k8sconfig, err = await smithery.k8s.cluster_config(
            cfg.kubeconfig, cfg.kubecontext, cfg.connection_parameters
        )
        if err:
            return True
        client = Client(k8sconfig, RESTMapper(cfg.discovery_ttl), cfg.apply_attempts)

    manifest, err = await smithery.forge.forge(schema, cfg.widgets_group, cfg.categories, client)
    if err:
        logit.error(err.msg)
        return True

    print(manifest.decode("utf8"), end="")
    return False


def main(args=None) -> int:
    param = parse_commandline_args(args)

    # Print version information and quit.
    if param.parser == "version":
        print(__version__)
        return 0

    # Create a default configuration file and quit.
    if param.parser == "config":
        fname = Path(param.output)
        fname.parent.mkdir(parents=True, exist_ok=True)
        fname.write_text(DEFAULT_CONFIG_FILE.read_text())
        print(
            f"Created configuration file <{fname}>.\n"
            "Please open the file in an editor and adjust the values, most notably "
            "`kubeconfig` and `widgets_group`."
        )
        return 0

    # Initialise logging.
    setup_logging(9 if param.debug else param.verbosity)

    # Create Smithery configuration from command line arguments.
    cfg, err = compile_config(param)
    if err:
        return 1

    # Do what the user asked us to do.
    if param.parser == "serve":
        err = serve(cfg)
    elif param.parser == "forge":
        err = asyncio.run(forge_file(cfg, Path(param.schema), param.apply))
    else:
        logit.error(f"Unknown command <{param.parser}>")
        return 1

    # Return error code.
    return 1 if err else 0
