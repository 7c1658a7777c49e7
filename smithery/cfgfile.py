"""Load the Smithery configuration file."""
import logging
from pathlib import Path
from types import SimpleNamespace
from typing import Tuple

import pydantic
import yaml

from smithery.dtypes import Config

# Convenience.
logit = logging.getLogger("smithery")


def load(fname: Path) -> Tuple[Config, bool]:
    """Parse the Smithery configuration file `fname` and return it as a `Config`."""
    err_resp = Config(), True
    fname = Path(fname)

    # Load the configuration file.
    try:
        raw = yaml.safe_load(fname.read_text())
    except FileNotFoundError as e:
        logit.error(f"Cannot load config file <{fname}>: {e.args[1]}")
        return err_resp
    except yaml.YAMLError as exc:
        # Special case: parser supplied location information.
        mark = getattr(exc, "problem_mark", SimpleNamespace(line=-1, column=-1))
        line, col = (mark.line + 1, mark.column + 1)
        logit.error(f"YAML format error in {fname}: Line {line} Column {col}")
        return err_resp

    # An empty file means "use all defaults".
    raw = {} if raw is None else raw

    # Parse the configuration into `Config` structure.
    try:
        cfg = Config.model_validate(raw)
    except (pydantic.ValidationError, TypeError) as e:
        logit.error(f"Schema is invalid: {e}")
        return err_resp

    # Relative kubeconfig paths are relative to the configuration file.
    if cfg.kubeconfig is not None:
        kubeconfig = cfg.kubeconfig.expanduser()
        cfg.kubeconfig = kubeconfig if kubeconfig.is_absolute() else fname.parent.absolute() / kubeconfig

    return cfg, False
